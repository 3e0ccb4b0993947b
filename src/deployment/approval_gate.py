"""
LOT 6: Approval Gate

Porte de temporisation (soak, attente de terminaison) ou d'approbation.

Invariants:
    La première décision l'emporte, les signaux suivants sont ignorés.
    Toute attente est bornée par la durée de la condition.
    Timer: l'expiration libère la porte. Signal externe: l'expiration l'abandonne.
"""

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class GateKind(Enum):
    """Nature de la condition de porte."""

    TIMER = "TIMER"
    EXTERNAL_SIGNAL = "EXTERNAL_SIGNAL"


class GateOutcome(Enum):
    """Issue d'une porte."""

    CLEARED = "CLEARED"
    ABORTED = "ABORTED"


@dataclass(frozen=True)
class GateCondition:
    """Condition de libération: minuterie ou signal opérateur borné."""

    kind: GateKind
    duration: float

    def __post_init__(self) -> None:
        if self.duration < 0:
            raise ValueError("gate duration must be >= 0")

    @classmethod
    def timer(cls, duration: float) -> "GateCondition":
        return cls(GateKind.TIMER, duration)

    @classmethod
    def external_signal(cls, timeout: float) -> "GateCondition":
        return cls(GateKind.EXTERNAL_SIGNAL, timeout)


@dataclass(frozen=True)
class GateResult:
    """Décision d'une porte."""

    outcome: GateOutcome
    reason: str
    actor: Optional[str] = None
    waited_seconds: float = 0.0
    timed_out: bool = False

    @property
    def cleared(self) -> bool:
        return self.outcome is GateOutcome.CLEARED


class ApprovalGate:
    """
    Porte à décision unique.

    Example:
        gate = ApprovalGate(GateCondition.timer(600))
        result = await gate.wait()     # ailleurs: gate.approve("alice")
    """

    def __init__(self, condition: GateCondition, name: str = "gate") -> None:
        self._condition = condition
        self._name = name
        self._decided = asyncio.Event()
        self._decision: Optional[GateResult] = None

    @property
    def condition(self) -> GateCondition:
        return self._condition

    @property
    def name(self) -> str:
        return self._name

    @property
    def decision(self) -> Optional[GateResult]:
        return self._decision

    def approve(self, actor: str, reason: str = "Approved") -> bool:
        """Libère la porte. False si une décision existe déjà."""
        return self._decide(GateResult(GateOutcome.CLEARED, reason, actor))

    def reject(self, actor: str, reason: str = "Rejected") -> bool:
        """Abandonne la porte sur décision opérateur."""
        return self._decide(GateResult(GateOutcome.ABORTED, reason, actor))

    def abort(self, reason: str, actor: str = "controller") -> bool:
        """Abandonne la porte (alarme, abort)."""
        return self._decide(GateResult(GateOutcome.ABORTED, reason, actor))

    def _decide(self, result: GateResult) -> bool:
        if self._decision is not None:
            return False
        self._decision = result
        self._decided.set()
        return True

    async def wait(self) -> GateResult:
        """
        Attend la décision ou l'expiration de la condition.

        Returns:
            GateResult avec waited_seconds renseigné
        """
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            await asyncio.wait_for(self._decided.wait(), timeout=self._condition.duration)
        except asyncio.TimeoutError:
            if self._condition.kind is GateKind.TIMER:
                expired = GateResult(GateOutcome.CLEARED, f"{self._name} timer elapsed", timed_out=True)
            else:
                expired = GateResult(
                    GateOutcome.ABORTED,
                    f"No signal for {self._name} within {self._condition.duration}s",
                    timed_out=True,
                )
            self._decide(expired)

        decision = self._decision or GateResult(GateOutcome.ABORTED, "No decision")
        return replace(decision, waited_seconds=loop.time() - started)

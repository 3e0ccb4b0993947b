"""
LOT 4: Health - Interfaces

Contrats de validation de santé d'un environnement candidat.

Invariants:
    Le verdict est recalculé à chaque sonde, jamais persisté.
    HEALTHY après healthy_threshold_count succès consécutifs.
    UNHEALTHY après unhealthy_threshold_count échecs consécutifs.
    Timeout de sonde <= intervalle: aucune sonde ne chevauche la suivante.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from ..network.endpoint_prober import http_codes_matcher
from ..network.interfaces import ResultPredicate

if TYPE_CHECKING:
    from ..deployment.interfaces import Environment


class VerdictStatus(Enum):
    """Verdict de santé sur la fenêtre glissante."""

    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"
    INCONCLUSIVE = "INCONCLUSIVE"

    @property
    def is_terminal(self) -> bool:
        """True si le verdict permet de trancher."""
        return self is not VerdictStatus.INCONCLUSIVE


@dataclass(frozen=True)
class HealthCheckSpec:
    """
    Spécification du health check d'un environnement.

    Valeurs par défaut alignées sur le target group d'origine:
    path "/", intervalle 60s, codes HTTP "200".
    """

    path: str = "/"
    interval_seconds: float = 60.0
    timeout_seconds: float = 5.0
    healthy_threshold_count: int = 3
    unhealthy_threshold_count: int = 3
    expected_codes: str = "200"
    expected: Optional[ResultPredicate] = None
    window_size: Optional[int] = None

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.timeout_seconds > self.interval_seconds:
            raise ValueError(
                f"timeout_seconds ({self.timeout_seconds}) must not exceed "
                f"interval_seconds ({self.interval_seconds})"
            )
        if self.healthy_threshold_count < 1 or self.unhealthy_threshold_count < 1:
            raise ValueError("threshold counts must be >= 1")
        if self.window_size is not None and self.window_size < self.min_window:
            raise ValueError(f"window_size must be >= {self.min_window}")
        http_codes_matcher(self.expected_codes)

    @property
    def min_window(self) -> int:
        """Taille minimale de fenêtre pour atteindre les deux seuils."""
        return max(self.healthy_threshold_count, self.unhealthy_threshold_count)

    @property
    def effective_window(self) -> int:
        """Taille de fenêtre effective."""
        return self.window_size or self.min_window

    def predicate(self) -> ResultPredicate:
        """Prédicat de réponse: expected s'il est fourni, sinon expected_codes."""
        return self.expected or http_codes_matcher(self.expected_codes)

    def to_dict(self) -> Dict[str, Any]:
        """Forme sérialisable (un prédicat personnalisé n'est pas conservé)."""
        return {
            "path": self.path,
            "interval_seconds": self.interval_seconds,
            "timeout_seconds": self.timeout_seconds,
            "healthy_threshold_count": self.healthy_threshold_count,
            "unhealthy_threshold_count": self.unhealthy_threshold_count,
            "expected_codes": self.expected_codes,
            "window_size": self.window_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthCheckSpec":
        return cls(**{k: v for k, v in data.items() if k in _SPEC_FIELDS})


_SPEC_FIELDS = (
    "path",
    "interval_seconds",
    "timeout_seconds",
    "healthy_threshold_count",
    "unhealthy_threshold_count",
    "expected_codes",
    "window_size",
)


@dataclass(frozen=True)
class HealthVerdict:
    """Verdict calculé sur la fenêtre glissante des dernières sondes."""

    environment_id: str
    window_start: datetime
    window_end: datetime
    success_count: int
    failure_count: int
    verdict: VerdictStatus
    consecutive_successes: int = 0
    consecutive_failures: int = 0

    def to_dict(self) -> dict:
        """Représentation JSON-compatible."""
        return {
            "environment_id": self.environment_id,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "verdict": self.verdict.value,
            "consecutive_successes": self.consecutive_successes,
            "consecutive_failures": self.consecutive_failures,
        }


class IHealthValidator(ABC):
    """
    Interface validateur de santé.

    Responsabilités:
        - Sondes continues par environnement (tâche de fond)
        - Fenêtre glissante et verdict à seuils
        - Lecture non bloquante du dernier verdict
    """

    @abstractmethod
    async def evaluate(self, environment: "Environment", spec: HealthCheckSpec) -> HealthVerdict:
        """
        Démarre (si besoin) les sondes et retourne le dernier verdict.

        Args:
            environment: Environnement à sonder
            spec: Spécification du health check

        Returns:
            Dernier verdict connu (INCONCLUSIVE au démarrage)
        """
        pass

    @abstractmethod
    def latest_verdict(self, environment_id: str) -> Optional[HealthVerdict]:
        """Dernier verdict, None si l'environnement n'est pas surveillé."""
        pass

    @abstractmethod
    async def wait_for_verdict(
        self,
        environment_id: str,
        timeout: Optional[float],
        statuses: Optional[frozenset] = None,
    ) -> Optional[HealthVerdict]:
        """
        Attend un verdict parmi statuses (défaut: terminal) ou le timeout.

        Returns:
            Verdict atteint, ou dernier verdict connu à l'expiration
        """
        pass

    @abstractmethod
    def reset(self, environment_id: str) -> None:
        """Vide la fenêtre (re-validation sous trafic réel)."""
        pass

    @abstractmethod
    async def stop(self, environment_id: str) -> None:
        """Arrête les sondes d'un environnement."""
        pass

    @abstractmethod
    async def stop_all(self) -> None:
        """Arrête toutes les sondes."""
        pass

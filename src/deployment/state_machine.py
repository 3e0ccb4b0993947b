"""
LOT 6: Deployment State Machine

Machine à états du déploiement blue/green.

Invariants:
    L'état suivant est une fonction pure de (état courant, événement).
    Rejouer un événement déjà appliqué est sans effet.
    Aucun événement n'a d'effet sur un état terminal.
    Chaque transition appliquée est persistée puis émise en audit.
"""

from typing import Dict, FrozenSet, Optional, Tuple

from ..audit.interfaces import AuditEventType, IAuditEmitter
from ..logging.structured_logger import StructuredLogger
from ..routing.interfaces import RoutingError
from .interfaces import (
    ApprovalRejected,
    ApprovalTimeout,
    DeploymentEvent,
    DeploymentRecord,
    DeploymentState,
    IDeploymentRecordStore,
    InvalidTransitionError,
    ProvisionError,
    StateTransition,
    ValidationFailure,
    ValidationTimeout,
)

S = DeploymentState
E = DeploymentEvent

# Chemin nominal
PROGRESS_TRANSITIONS: Dict[Tuple[DeploymentState, DeploymentEvent], DeploymentState] = {
    (S.PENDING, E.START_PROVISIONING): S.PROVISIONING,
    (S.PROVISIONING, E.PROVISIONED): S.VALIDATING,
    (S.VALIDATING, E.VALIDATION_PASSED): S.SHIFTING_TRAFFIC,
    (S.SHIFTING_TRAFFIC, E.TRAFFIC_SHIFTED): S.SOAKING,
    (S.SOAKING, E.SOAK_CLEARED): S.PROMOTING,
    (S.PROMOTING, E.PROMOTED): S.TERMINATING_OLD,
    (S.TERMINATING_OLD, E.OLD_TERMINATED): S.SUCCEEDED,
    (S.ROLLING_BACK, E.ROLLBACK_COMPLETED): S.FAILED,
}

FAULT_EVENTS: FrozenSet[DeploymentEvent] = frozenset(
    {
        E.PROVISION_FAILED,
        E.VALIDATION_FAILED,
        E.VALIDATION_TIMEOUT,
        E.ROUTING_FAILED,
        E.ALARM_RAISED,
        E.APPROVAL_REJECTED,
        E.APPROVAL_TIMEOUT,
        E.ABORTED,
        E.DEADLINE_EXCEEDED,
    }
)

# Rien n'est encore exposé: échec direct, sans rollback
PRE_EXPOSURE_STATES: FrozenSet[DeploymentState] = frozenset({S.PENDING, S.PROVISIONING})

# Un candidat existe: tout échec passe par ROLLING_BACK
ROLLBACK_STATES: FrozenSet[DeploymentState] = frozenset(
    {S.VALIDATING, S.SHIFTING_TRAFFIC, S.SOAKING, S.PROMOTING, S.TERMINATING_OLD}
)

# Nature d'échec enregistrée sur le record (failure_kind)
FAILURE_KINDS: Dict[DeploymentEvent, str] = {
    E.PROVISION_FAILED: ProvisionError.kind,
    E.VALIDATION_FAILED: ValidationFailure.kind,
    E.VALIDATION_TIMEOUT: ValidationTimeout.kind,
    E.ROUTING_FAILED: RoutingError.__name__,
    E.ALARM_RAISED: "HealthAlarm",
    E.APPROVAL_REJECTED: ApprovalRejected.kind,
    E.APPROVAL_TIMEOUT: ApprovalTimeout.kind,
    E.ABORTED: "Aborted",
    E.DEADLINE_EXCEEDED: "DeadlineExceeded",
}


def next_state(state: DeploymentState, event: DeploymentEvent) -> Optional[DeploymentState]:
    """
    Fonction de transition pure.

    Returns:
        État cible, ou None si l'événement n'est pas valide dans cet état
    """
    if (state, event) in PROGRESS_TRANSITIONS:
        return PROGRESS_TRANSITIONS[(state, event)]
    if event in FAULT_EVENTS:
        if state in PRE_EXPOSURE_STATES:
            return S.FAILED
        if state in ROLLBACK_STATES and event is not E.PROVISION_FAILED:
            return S.ROLLING_BACK
    return None


class DeploymentStateMachine:
    """
    Applique les événements à un DeploymentRecord.

    Le calcul de transition est pur; persistance, audit et logs sont
    des effets appliqués après mutation du record.
    """

    def __init__(
        self,
        store: IDeploymentRecordStore,
        audit_emitter: IAuditEmitter,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self._store = store
        self._audit = audit_emitter
        self._logger = logger

    @staticmethod
    def transition(
        record: DeploymentRecord,
        event: DeploymentEvent,
        reason: str = "",
    ) -> Optional[StateTransition]:
        """
        Mute le record si l'événement est valide (sans effet de bord externe).

        Returns:
            Transition appliquée, None pour un no-op (rejeu, état terminal,
            faute absorbée pendant ROLLING_BACK)

        Raises:
            InvalidTransitionError: Événement ni valide ni rejoué
        """
        current = record.state
        if current.is_terminal:
            return None

        target = next_state(current, event)
        if target is None:
            if record.has_event(event):
                return None
            if current is S.ROLLING_BACK and event in FAULT_EVENTS:
                return None
            raise InvalidTransitionError(current, event, record.request_id)

        applied = StateTransition(from_state=current, to_state=target, event=event, reason=reason)
        record.history.append(applied)
        record.state = target

        if event in FAULT_EVENTS and record.failure_reason is None:
            record.failure_reason = reason or event.value
            record.failure_kind = FAILURE_KINDS[event]
        if target.is_terminal:
            record.completed_at = applied.timestamp

        return applied

    async def apply_event(
        self,
        record: DeploymentRecord,
        event: DeploymentEvent,
        reason: str = "",
        actor: str = "controller",
    ) -> bool:
        """
        Applique un événement puis persiste et audite la transition.

        Returns:
            True si une transition a eu lieu, False pour un no-op

        Raises:
            InvalidTransitionError: Événement invalide dans l'état courant
        """
        applied = self.transition(record, event, reason)
        if applied is None:
            return False

        await self._store.save(record)

        if self._logger is not None:
            log = self._logger.warn if event in FAULT_EVENTS else self._logger.info
            log(
                f"State {applied.from_state.value} -> {applied.to_state.value}",
                correlation_id=record.request_id,
                listener_id=record.listener_id,
                event=event.value,
                reason=reason,
            )

        await self._audit.emit_event(
            event_type=AuditEventType.STATE_TRANSITION,
            request_id=record.request_id,
            listener_id=record.listener_id,
            action=f"{applied.from_state.value}->{applied.to_state.value}",
            actor=actor,
            metadata={
                "request_id": record.request_id,
                "from_state": applied.from_state.value,
                "to_state": applied.to_state.value,
                "event": event.value,
                "timestamp": applied.timestamp.isoformat(),
                "reason": reason,
            },
        )
        return True

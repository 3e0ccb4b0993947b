"""
LOT 6: Rollback Manager

Restauration du routage d'avant bascule.

Invariants:
    Rollback = restauration exacte des tables relevées avant la bascule.
    Le candidat finit à poids 0 (détaché) sur chaque listener touché.
    Ne décide jamais s'il faut revenir en arrière: le contrôleur décide.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from ..audit.interfaces import AuditEventType, IAuditEmitter
from ..logging.structured_logger import StructuredLogger
from ..network.interfaces import RetryConfig
from ..network.retry_handler import RetryHandler
from ..routing.interfaces import RoutingError, RoutingSnapshot
from ..routing.traffic_router import TrafficRouter
from .interfaces import DeploymentError, DeploymentRecord


class RollbackError(DeploymentError):
    """Le routage n'a pas pu être restauré."""

    kind = "RollbackError"


@dataclass
class RollbackResult:
    """Résultat d'un rollback."""

    request_id: str
    routing_reverted: bool
    restored: Dict[str, RoutingSnapshot] = field(default_factory=dict)
    environments_to_teardown: List[str] = field(default_factory=list)


class RollbackManager:
    """
    Restaure les tables de routage d'avant bascule.

    Sans exposition préalable (échec en VALIDATING), le routage n'est pas
    touché: seul l'abandon du candidat est rapporté.
    """

    def __init__(
        self,
        router: TrafficRouter,
        audit_emitter: Optional[IAuditEmitter] = None,
        logger: Optional[StructuredLogger] = None,
        retry_handler: Optional[RetryHandler] = None,
        retry_config: Optional[RetryConfig] = None,
        attempt_timeout: Optional[float] = None,
    ) -> None:
        """
        Args:
            attempt_timeout: Durée max d'une écriture de table (timeout routing)
        """
        self._router = router
        self._audit = audit_emitter
        self._logger = logger
        self._retry = retry_handler or RetryHandler()
        self._retry_config = retry_config or RetryConfig(
            max_attempts=3,
            initial_delay=0.5,
            max_delay=2.0,
            retryable_exceptions=(RoutingError,),
        )
        if attempt_timeout is not None:
            self._retry_config = replace(self._retry_config, attempt_timeout=attempt_timeout)

    def planned_tables(self, record: DeploymentRecord) -> Dict[str, Dict[str, int]]:
        """
        Tables à restaurer, par listener.

        Repli {active: 100} si la table relevée du listener principal est vide.
        """
        tables = {listener: dict(weights) for listener, weights in record.pre_shift_routing.items()}
        primary = record.listener_id
        if primary in tables and not tables[primary] and record.active_environment is not None:
            tables[primary] = {record.active_environment.environment_id: 100}
        return tables

    async def rollback(self, record: DeploymentRecord) -> RollbackResult:
        """
        Restaure le routage et liste les environnements à détruire.

        Raises:
            RollbackError: Restauration impossible après retries
        """
        result = RollbackResult(request_id=record.request_id, routing_reverted=False)

        for listener_id, weights in self.planned_tables(record).items():
            outcome = await self._retry.execute_with_retry(
                self._router.apply_weights,
                listener_id,
                weights,
                request_id=record.request_id,
                config=self._retry_config,
                on_retry=lambda attempt, error, delay, lid=listener_id: self._on_retry(
                    record, lid, attempt, error, delay
                ),
            )
            if not outcome.success:
                raise RollbackError(
                    f"Cannot restore routing of {listener_id}: {outcome.last_error}",
                    record.request_id,
                )
            result.restored[listener_id] = outcome.result
            result.routing_reverted = True

        candidate = record.candidate_environment
        if candidate is not None:
            result.environments_to_teardown.append(candidate.environment_id)

        if self._logger is not None:
            self._logger.warn(
                "Rollback completed",
                correlation_id=record.request_id,
                listener_id=record.listener_id,
                routing_reverted=result.routing_reverted,
                restored={k: dict(v.weights) for k, v in result.restored.items()},
            )

        if self._audit is not None:
            await self._audit.emit_event(
                event_type=AuditEventType.ROLLBACK,
                request_id=record.request_id,
                listener_id=record.listener_id,
                action="rollback",
                metadata={
                    "routing_reverted": result.routing_reverted,
                    "restored": {k: dict(v.weights) for k, v in result.restored.items()},
                    "environments_to_teardown": result.environments_to_teardown,
                    "failure_reason": record.failure_reason,
                },
            )

        return result

    def _on_retry(
        self,
        record: DeploymentRecord,
        listener_id: str,
        attempt: int,
        error: Exception,
        delay: float,
    ) -> None:
        if self._logger is not None:
            self._logger.warn(
                f"Retrying routing restore (attempt {attempt})",
                correlation_id=record.request_id,
                listener_id=listener_id,
                error=str(error),
                delay=delay,
            )

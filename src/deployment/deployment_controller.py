"""
LOT 6: Deployment Controller Implementation

Contrôleur de déploiement blue/green zero-downtime.

Invariants:
    Une seule requête en vol par listener, une seconde est rejetée (ConflictError).
    Le candidat n'est exposé qu'après un verdict HEALTHY.
    Tout échec après exposition passe par ROLLING_BACK.
    L'ancien environnement reste intact jusqu'à la fin de l'attente de terminaison.
    Chaque attente bloquante est bornée par un timeout du TimeoutManager.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeVar

from ..audit.interfaces import AuditEventType, IAuditEmitter
from ..core.interfaces import TimeoutType
from ..core.request_validator import RequestValidator
from ..core.timeout_manager import TimeoutManager
from ..health.interfaces import HealthCheckSpec, IHealthValidator, VerdictStatus
from ..logging.structured_logger import ContextualLogger, StructuredLogger
from ..network.interfaces import IEndpointProber
from ..network.retry_handler import RetryHandler
from ..routing.interfaces import IRoutingBackend, IWeightPolicy, RoutingError
from ..routing.traffic_router import TrafficRouter
from ..routing.weight_policy import StrategyStepPolicy
from ..health.health_validator import HealthValidator
from .approval_gate import ApprovalGate, GateCondition, GateResult
from .interfaces import (
    ApprovalMode,
    ConflictError,
    DeploymentEvent,
    DeploymentNotFoundError,
    DeploymentRecord,
    DeploymentRequest,
    DeploymentState,
    EnvironmentRole,
    EnvironmentSpec,
    Environment,
    IDeploymentRecordStore,
    IEnvironmentProvisioner,
    InvalidRequestError,
    ProvisionError,
    ProvisionState,
    ProvisionStatus,
    TeardownError,
    TeardownStatus,
)
from .record_store import InMemoryRecordStore, JsonFileRecordStore
from .rollback_manager import RollbackError, RollbackManager
from .state_machine import FAULT_EVENTS, DeploymentStateMachine
from .teardown_worker import TeardownWorker

T = TypeVar("T")

E = DeploymentEvent
S = DeploymentState

# États où le dépassement du budget global déclenche un échec
DEADLINE_STATES = frozenset(
    {S.PENDING, S.PROVISIONING, S.VALIDATING, S.SHIFTING_TRAFFIC, S.SOAKING}
)


class _Interrupted(Exception):
    """L'état a changé hors du driver (abort, alarme, deadline)."""

    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentController:
    """
    Contrôleur de déploiement blue/green.

    Un driver asyncio par déploiement parcourt la machine à états; chaque
    handler d'état est ré-entrant pour permettre la reprise (resume).

    Example:
        controller = DeploymentController(provisioner, router, validator, store, audit, logger)
        await controller.submit(request)
        record = await controller.wait(request.request_id)
    """

    DEFAULT_POLL_INTERVAL: float = 1.0

    def __init__(
        self,
        provisioner: IEnvironmentProvisioner,
        router: TrafficRouter,
        validator: IHealthValidator,
        record_store: IDeploymentRecordStore,
        audit_emitter: IAuditEmitter,
        logger: StructuredLogger,
        timeout_manager: Optional[TimeoutManager] = None,
        rollback_manager: Optional[RollbackManager] = None,
        teardown_worker: Optional[TeardownWorker] = None,
        weight_policy: Optional[IWeightPolicy] = None,
        request_validator: Optional[RequestValidator] = None,
        default_health_check: Optional[HealthCheckSpec] = None,
        poll_interval: Optional[float] = None,
    ) -> None:
        """
        Initialise le contrôleur.

        Args:
            provisioner: Provisioning de capacité (collaborateur)
            router: Routeur de trafic
            validator: Validateur de santé
            record_store: Persistance des records
            audit_emitter: Émetteur d'événements audit
            logger: Logger structuré
            timeout_manager: Timeouts des attentes
            rollback_manager: Restauration du routage
            teardown_worker: Destruction asynchrone
            weight_policy: Paliers canary
            request_validator: Validation des requêtes
            default_health_check: Health check si la requête n'en fournit pas
            poll_interval: Intervalle de polling du provisioning (secondes)
        """
        self._provisioner = provisioner
        self._router = router
        self._validator = validator
        self._store = record_store
        self._audit = audit_emitter
        self._logger = logger
        self._timeouts = timeout_manager or TimeoutManager()
        self._rollback = rollback_manager or RollbackManager(
            router,
            audit_emitter,
            logger,
            attempt_timeout=self._timeouts.get_timeout(TimeoutType.ROUTING),
        )
        self._teardown = teardown_worker or TeardownWorker(
            provisioner,
            audit_emitter=audit_emitter,
            logger=logger,
            attempt_timeout=self._timeouts.get_timeout(TimeoutType.TEARDOWN),
        )
        self._weight_policy = weight_policy or StrategyStepPolicy()
        self._request_validator = request_validator or RequestValidator(self._timeouts)
        self._default_health_check = default_health_check or HealthCheckSpec()
        self._poll_interval = poll_interval or self.DEFAULT_POLL_INTERVAL
        self._state_machine = DeploymentStateMachine(record_store, audit_emitter, logger)

        self._records: Dict[str, DeploymentRecord] = {}
        self._drivers: Dict[str, asyncio.Task] = {}
        self._in_flight: Dict[str, str] = {}  # listener_id -> request_id
        self._submit_locks: Dict[str, asyncio.Lock] = {}
        self._interrupts: Dict[str, asyncio.Event] = {}
        self._gates: Dict[str, ApprovalGate] = {}
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        provisioner: IEnvironmentProvisioner,
        routing_backend: IRoutingBackend,
        prober: IEndpointProber,
        audit_emitter: IAuditEmitter,
        logger: StructuredLogger,
    ) -> "DeploymentController":
        """
        Assemble un contrôleur depuis ControllerSettings (config_loader).

        Args:
            settings: ControllerSettings chargé par ConfigLoader
        """
        timeouts = settings.build_timeout_manager()
        router = TrafficRouter(routing_backend, audit_emitter, logger.child("router"))
        validator = HealthValidator(prober, logger.child("health"))
        if settings.record_store_path:
            store: IDeploymentRecordStore = JsonFileRecordStore(settings.record_store_path)
        else:
            store = InMemoryRecordStore()
        teardown = TeardownWorker(
            provisioner,
            retry_handler=RetryHandler(),
            retry_config=settings.retry.to_config((TeardownError,)),
            audit_emitter=audit_emitter,
            logger=logger.child("teardown"),
            attempt_timeout=timeouts.get_timeout(TimeoutType.TEARDOWN),
        )
        return cls(
            provisioner=provisioner,
            router=router,
            validator=validator,
            record_store=store,
            audit_emitter=audit_emitter,
            logger=logger,
            timeout_manager=timeouts,
            rollback_manager=RollbackManager(
                router,
                audit_emitter,
                logger.child("rollback"),
                attempt_timeout=timeouts.get_timeout(TimeoutType.ROUTING),
            ),
            teardown_worker=teardown,
            default_health_check=settings.health_check.to_spec(),
            poll_interval=settings.poll_interval_seconds,
        )

    @property
    def teardown_worker(self) -> TeardownWorker:
        return self._teardown

    # ═══════════════════════════════════════════════════════════════════════
    # SURFACE OPÉRATEUR
    # ═══════════════════════════════════════════════════════════════════════

    async def submit(self, request: DeploymentRequest, actor: str = "operator") -> DeploymentRecord:
        """
        Accepte une requête de déploiement et démarre son driver.

        Args:
            request: Requête de déploiement
            actor: Auteur de la soumission

        Returns:
            Copie du record (PROVISIONING), ou du record existant si la même
            requête est resoumise à l'identique

        Raises:
            InvalidRequestError: Requête invalide
            ConflictError: Déploiement en vol sur le listener, ou request_id
                réutilisé avec un contenu différent
        """
        result = self._request_validator.validate(request)
        if not result.valid:
            raise InvalidRequestError(
                f"Invalid deployment request: {result.summary()}",
                request.request_id,
                errors=result.errors,
            )
        for warning in result.warnings:
            self._logger.warn(
                warning.message,
                correlation_id=request.request_id,
                listener_id=request.listener_id,
                rule_id=warning.rule_id,
            )

        async with self._lock_for(request.listener_id):
            existing = self._records.get(request.request_id) or await self._store.get(request.request_id)
            if existing is not None:
                if existing.request.to_dict() == request.to_dict():
                    return self._snapshot(existing)
                raise ConflictError(
                    f"Request id {request.request_id} already used with different content",
                    request.request_id,
                )

            for listener_id in self._listeners_of(request):
                holder = self._in_flight.get(listener_id)
                if holder is not None:
                    raise ConflictError(
                        f"Deployment {holder} already in flight on {listener_id}",
                        request.request_id,
                    )
            stored = await self._store.list_in_flight(request.listener_id)
            if stored:
                raise ConflictError(
                    f"Deployment {stored[0].request_id} already in flight on {request.listener_id}",
                    request.request_id,
                )

            record = DeploymentRecord(request=request)
            self._register(record)
            await self._store.save(record)

        await self._audit.emit_event(
            event_type=AuditEventType.DEPLOYMENT_SUBMITTED,
            request_id=request.request_id,
            listener_id=request.listener_id,
            action="submit",
            actor=actor,
            metadata=request.to_dict(),
        )
        await self._state_machine.apply_event(record, E.START_PROVISIONING, "Deployment submitted", actor)
        self._start_driver(record)
        return self._snapshot(record)

    async def approve(self, request_id: str, actor: str, reason: str = "Approved") -> bool:
        """
        Libère la porte ouverte (soak ou attente de terminaison).

        Returns:
            True si la décision a été prise, False si aucune porte ouverte
            ou décision déjà prise
        """
        record = await self._require(request_id)
        gate = self._gates.get(request_id)
        decided = gate.approve(actor, reason) if gate else False
        await self._emit_operator_action(record, "approve", actor, reason, decided)
        return decided

    async def reject(self, request_id: str, actor: str, reason: str = "Rejected") -> bool:
        """
        Rejette la porte ouverte: le déploiement part en rollback.

        Returns:
            True si la décision a été prise
        """
        record = await self._require(request_id)
        gate = self._gates.get(request_id)
        decided = gate.reject(actor, reason) if gate else False
        await self._emit_operator_action(record, "reject", actor, reason, decided)
        return decided

    async def abort(self, request_id: str, reason: str = "Aborted by operator", actor: str = "operator") -> bool:
        """
        Abandonne un déploiement dans tout état non terminal.

        L'événement ABORTED est appliqué immédiatement; les appels en cours
        se terminent en tâche de fond et sont réconciliés.

        Returns:
            True si l'abandon a provoqué une transition
        """
        record = await self._require(request_id)
        applied = await self.apply_event(request_id, E.ABORTED, reason, actor)
        await self._emit_operator_action(record, "abort", actor, reason, applied)
        return applied

    async def raise_alarm(self, request_id: str, reason: str, actor: str = "monitoring") -> bool:
        """
        Signale une alarme (santé, métriques externes).

        Returns:
            True si l'alarme a provoqué une transition
        """
        record = await self._require(request_id)
        applied = await self.apply_event(request_id, E.ALARM_RAISED, reason, actor)
        await self._audit.emit_event(
            event_type=AuditEventType.HEALTH_ALARM,
            request_id=request_id,
            listener_id=record.listener_id,
            action="alarm",
            actor=actor,
            metadata={"reason": reason, "state": record.state.value, "applied": applied},
        )
        return applied

    async def apply_event(
        self,
        request_id: str,
        event: DeploymentEvent,
        reason: str = "",
        actor: str = "controller",
    ) -> bool:
        """
        Applique un événement externe au déploiement.

        Un événement d'échec interrompt le driver et abandonne la porte ouverte.

        Returns:
            True si transition, False pour un no-op (rejeu, état terminal)

        Raises:
            DeploymentNotFoundError: request_id inconnu
            InvalidTransitionError: Événement invalide dans l'état courant
        """
        record = await self._require(request_id)
        applied = await self._state_machine.apply_event(record, event, reason, actor)
        if applied and event in FAULT_EVENTS:
            self._interrupt(record, reason or event.value)
        return applied

    async def get_status(self, request_id: str) -> Dict[str, Any]:
        """
        Snapshot lisible d'un déploiement.

        Raises:
            DeploymentNotFoundError: request_id inconnu
        """
        record = await self._require(request_id)
        status = record.to_dict()
        candidate = record.candidate_environment
        verdict = self._validator.latest_verdict(candidate.environment_id) if candidate else None
        status["health"] = verdict.to_dict() if verdict else None
        gate = self._gates.get(request_id)
        status["open_gate"] = gate.name if gate else None
        status["timeouts"] = self._timeouts.as_dict(record.listener_id)
        serving = record.serving_environment()
        status["serving_environment"] = serving.to_dict() if serving else None
        return status

    async def wait(self, request_id: str, timeout: Optional[float] = None) -> DeploymentRecord:
        """
        Attend la fin du driver d'un déploiement.

        Returns:
            Copie du record final

        Raises:
            asyncio.TimeoutError: Si le déploiement n'est pas terminé à temps
        """
        driver = self._drivers.get(request_id)
        if driver is not None:
            await asyncio.wait_for(asyncio.shield(driver), timeout=timeout)
        record = await self._require(request_id)
        return self._snapshot(record)

    async def resume(self, request_id: str) -> DeploymentRecord:
        """
        Reprend un déploiement persisté depuis son état courant.

        Raises:
            DeploymentNotFoundError: request_id inconnu du store
        """
        driver = self._drivers.get(request_id)
        if driver is not None and not driver.done():
            return self._snapshot(self._records[request_id])

        record = await self._store.get(request_id)
        if record is None:
            raise DeploymentNotFoundError(f"Unknown deployment {request_id}", request_id)
        if record.state.is_terminal:
            return record

        self._register(record)
        self._logger.info(
            f"Resuming deployment from {record.state.value}",
            correlation_id=request_id,
            listener_id=record.listener_id,
        )
        self._start_driver(record)
        return self._snapshot(record)

    async def list_deployments(self) -> List[Dict[str, Any]]:
        """Résumé de tous les déploiements connus du store."""
        return [
            {
                "request_id": r.request_id,
                "listener_id": r.listener_id,
                "state": r.state.value,
                "started_at": r.started_at.isoformat(),
                "completed_at": r.completed_at.isoformat() if r.completed_at else None,
                "failure_reason": r.failure_reason,
            }
            for r in await self._store.list_records()
        ]

    async def close(self) -> None:
        """Arrête drivers, sondes et tâches de fond (les records restent persistés)."""
        tasks = [t for t in self._drivers.values() if not t.done()] + list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._validator.stop_all()

    # ═══════════════════════════════════════════════════════════════════════
    # DRIVER
    # ═══════════════════════════════════════════════════════════════════════

    def _start_driver(self, record: DeploymentRecord) -> None:
        task = asyncio.create_task(self._drive(record), name=f"deployment-{record.request_id}")
        self._drivers[record.request_id] = task

    async def _drive(self, record: DeploymentRecord) -> None:
        """Parcourt la machine à états jusqu'à un état terminal."""
        handlers: Dict[DeploymentState, Callable[[DeploymentRecord], Awaitable[None]]] = {
            S.PENDING: self._handle_pending,
            S.PROVISIONING: self._handle_provisioning,
            S.VALIDATING: self._handle_validating,
            S.SHIFTING_TRAFFIC: self._handle_shifting,
            S.SOAKING: self._handle_soaking,
            S.PROMOTING: self._handle_promoting,
            S.TERMINATING_OLD: self._handle_terminating_old,
            S.ROLLING_BACK: self._handle_rolling_back,
        }
        log = self._log(record)
        deadline = self._spawn(self._watch_deadline(record), f"deadline-{record.request_id}")

        try:
            while not record.state.is_terminal:
                state = record.state
                try:
                    await handlers[state](record)
                except _Interrupted:
                    continue
                except Exception as e:
                    log.error(f"Unexpected error in {state.value}: {e}", error_type=type(e).__name__)
                    if record.state is not state:
                        continue
                    if state is S.ROLLING_BACK:
                        await self._state_machine.apply_event(
                            record, E.ROLLBACK_COMPLETED, f"Rollback incomplete: {e}"
                        )
                    else:
                        await self._state_machine.apply_event(
                            record, E.ABORTED, f"Unexpected error in {state.value}: {e}"
                        )
        finally:
            deadline.cancel()
            await self._finalize(record)

    async def _finalize(self, record: DeploymentRecord) -> None:
        """
        Libère le listener et les ressources de surveillance.

        Le listener est libéré avant toute attente sur un collaborateur: un
        arrêt de sonde lent ne doit pas bloquer les soumissions suivantes.
        """
        self._release(record)
        candidate = record.candidate_environment
        if candidate is not None:
            await self._validator.stop(candidate.environment_id)

        if (
            record.state is S.FAILED
            and candidate is not None
            and candidate.environment_id not in record.teardown_status
            and not record.traffic_exposed()
        ):
            self._schedule_teardown(record, candidate.environment_id, "Deployment failed")

        await self._store.save(record)

        if record.state.is_terminal:
            self._log(record).info(
                f"Deployment finished: {record.state.value}",
                failure_reason=record.failure_reason,
                failure_kind=record.failure_kind,
            )

    def _release(self, record: DeploymentRecord) -> None:
        for listener_id in self._listeners_of(record.request):
            if self._in_flight.get(listener_id) == record.request_id:
                del self._in_flight[listener_id]
        self._interrupts.pop(record.request_id, None)
        self._gates.pop(record.request_id, None)

    async def _watch_deadline(self, record: DeploymentRecord) -> None:
        """Applique DEADLINE_EXCEEDED si le budget global expire avant promotion."""
        budget = self._timeouts.get_timeout(TimeoutType.DEPLOYMENT, record.listener_id)
        elapsed = (_utcnow() - record.started_at).total_seconds()
        await asyncio.sleep(max(0.0, budget - elapsed))
        if record.state in DEADLINE_STATES:
            await self.apply_event(
                record.request_id,
                E.DEADLINE_EXCEEDED,
                f"Deployment timeout ({budget}s) exceeded in {record.state.value}",
            )

    # ═══════════════════════════════════════════════════════════════════════
    # HANDLERS D'ÉTAT (ré-entrants)
    # ═══════════════════════════════════════════════════════════════════════

    async def _handle_pending(self, record: DeploymentRecord) -> None:
        await self._state_machine.apply_event(record, E.START_PROVISIONING, "Deployment resumed")

    async def _handle_provisioning(self, record: DeploymentRecord) -> None:
        """Résout l'environnement ACTIVE puis provisionne le candidat."""
        request = record.request

        if record.active_environment is None:
            active = await self._interruptible(record, self._resolve_active(record))
            if active is None:
                await self._state_machine.apply_event(
                    record, E.PROVISION_FAILED, f"No active environment on {request.listener_id}"
                )
                return
            record.active_environment = active
            await self._store.save(record)

        if record.provision_operation_id is None:
            active = record.active_environment
            spec = EnvironmentSpec(
                request_id=request.request_id,
                listener_id=request.listener_id,
                image_ref=request.target_image_ref,
                replica_count=active.replica_count,
                template_environment_id=active.environment_id,
            )
            try:
                operation_id = await self._interruptible(
                    record, self._request_environment(record, spec), detach=True
                )
            except ProvisionError as e:
                await self._state_machine.apply_event(record, E.PROVISION_FAILED, str(e))
                return
            record.provision_operation_id = operation_id
            await self._store.save(record)

        timeout = self._remaining(record, S.PROVISIONING, TimeoutType.PROVISIONING)
        operation_id = record.provision_operation_id
        try:
            status = await self._interruptible(record, self._poll_provisioning(operation_id, timeout))
        except _Interrupted:
            self._reconcile_late_environment(record, operation_id)
            raise
        except ProvisionError as e:
            self._reconcile_late_environment(record, operation_id)
            await self._state_machine.apply_event(record, E.PROVISION_FAILED, str(e))
            return

        if status.state is ProvisionState.FAILED or status.environment is None:
            await self._state_machine.apply_event(
                record, E.PROVISION_FAILED, status.message or "Provisioning failed"
            )
            return

        record.candidate_environment = status.environment.with_role(EnvironmentRole.CANDIDATE).with_weight(0)
        await self._state_machine.apply_event(
            record, E.PROVISIONED, f"Environment {status.environment.environment_id} ready"
        )

    async def _handle_validating(self, record: DeploymentRecord) -> None:
        """Sonde le candidat jusqu'à un verdict terminal ou le timeout."""
        candidate = record.candidate_environment
        spec = self._health_spec(record)
        timeout = self._remaining(record, S.VALIDATING, TimeoutType.VALIDATION)

        await self._validator.evaluate(candidate, spec)
        verdict = await self._interruptible(
            record, self._validator.wait_for_verdict(candidate.environment_id, timeout)
        )

        if verdict is not None and verdict.verdict is VerdictStatus.HEALTHY:
            await self._state_machine.apply_event(
                record, E.VALIDATION_PASSED, f"{verdict.consecutive_successes} consecutive successful probes"
            )
        elif verdict is not None and verdict.verdict is VerdictStatus.UNHEALTHY:
            await self._state_machine.apply_event(
                record, E.VALIDATION_FAILED, f"Candidate unhealthy: {verdict.consecutive_failures} consecutive failed probes"
            )
        else:
            await self._state_machine.apply_event(
                record, E.VALIDATION_TIMEOUT, f"No health verdict within {timeout:.1f}s"
            )

    async def _handle_shifting(self, record: DeploymentRecord) -> None:
        """Expose le candidat: listener de test, paliers canary ou attache à 0%."""
        request = record.request
        candidate_id = record.candidate_environment.environment_id

        if not record.pre_shift_routing:
            for listener_id in self._listeners_of(request):
                snapshot = await self._router.get_weights(listener_id)
                record.pre_shift_routing[listener_id] = dict(snapshot.weights)
            await self._store.save(record)

        try:
            if request.test_listener_id:
                await self._interruptible(
                    record,
                    self._router.apply_weights(
                        request.test_listener_id, {candidate_id: 100}, request_id=request.request_id
                    ),
                    detach=True,
                )
                await self._sync_weights(record)
                if not await self._revalidate(record, f"100% of {request.test_listener_id}"):
                    return
            else:
                for weight in self._weight_policy.plan(list(request.strategy.steps)):
                    await self._interruptible(
                        record,
                        self._router.shift_weight(
                            request.listener_id, candidate_id, weight, request_id=request.request_id
                        ),
                        detach=True,
                    )
                    await self._sync_weights(record)
                    if not await self._revalidate(record, f"{weight}% traffic"):
                        return
        except RoutingError as e:
            await self._state_machine.apply_event(record, E.ROUTING_FAILED, str(e))
            return

        await self._sync_weights(record)
        await self._state_machine.apply_event(record, E.TRAFFIC_SHIFTED, "Candidate exposed")

    async def _revalidate(self, record: DeploymentRecord, exposure: str) -> bool:
        """
        Re-valide la santé après une exposition (palier ou listener de test).

        La fenêtre est vidée: seul un verdict obtenu après l'exposition compte.
        """
        candidate_id = record.candidate_environment.environment_id
        self._validator.reset(candidate_id)
        timeout = self._timeouts.get_timeout(TimeoutType.VALIDATION, record.listener_id)
        verdict = await self._interruptible(
            record, self._validator.wait_for_verdict(candidate_id, timeout)
        )
        if verdict is not None and verdict.verdict is VerdictStatus.HEALTHY:
            self._log(record).info(f"Candidate healthy at {exposure}")
            return True
        if verdict is not None and verdict.verdict is VerdictStatus.UNHEALTHY:
            await self._state_machine.apply_event(
                record, E.VALIDATION_FAILED, f"Candidate unhealthy at {exposure}"
            )
        else:
            await self._state_machine.apply_event(
                record, E.VALIDATION_TIMEOUT, f"No health verdict at {exposure} within {timeout}s"
            )
        return False

    async def _handle_soaking(self, record: DeploymentRecord) -> None:
        """Porte de soak: minuterie ou approbation manuelle, sous surveillance santé."""
        request = record.request
        if request.approval_mode is ApprovalMode.MANUAL:
            approval = self._timeouts.get_timeout(TimeoutType.APPROVAL, request.listener_id)
            condition = GateCondition.external_signal(min(approval, self._deployment_budget_left(record)))
        else:
            condition = GateCondition.timer(self._remaining_wait(record, S.SOAKING, request.soak_duration))

        result = await self._run_gate(record, "soak", condition)
        if result.cleared:
            await self._state_machine.apply_event(
                record, E.SOAK_CLEARED, result.reason, result.actor or "controller"
            )
        elif result.timed_out:
            await self._state_machine.apply_event(record, E.APPROVAL_TIMEOUT, result.reason)
        else:
            await self._state_machine.apply_event(
                record, E.APPROVAL_REJECTED, result.reason, result.actor or "controller"
            )

    async def _handle_promoting(self, record: DeploymentRecord) -> None:
        """Bascule 100% du trafic principal sur le candidat."""
        request = record.request
        candidate = record.candidate_environment
        active = record.active_environment

        try:
            primary = await self._router.get_weights(request.listener_id)
            if primary.weight_of(candidate.environment_id) != 100:
                if request.test_listener_id:
                    await self._router.swap_listeners(
                        request.listener_id, request.test_listener_id, request_id=request.request_id
                    )
                else:
                    await self._router.apply_weights(
                        request.listener_id, {candidate.environment_id: 100}, request_id=request.request_id
                    )
        except RoutingError as e:
            await self._state_machine.apply_event(record, E.ROUTING_FAILED, str(e))
            return

        record.candidate_environment = candidate.with_role(EnvironmentRole.ACTIVE)
        record.active_environment = active.with_role(EnvironmentRole.RETIRING)
        await self._sync_weights(record)
        await self._state_machine.apply_event(
            record, E.PROMOTED, f"{candidate.environment_id} now serves 100% of {request.listener_id}"
        )

    async def _handle_terminating_old(self, record: DeploymentRecord) -> None:
        """Garde l'ancien environnement chaud puis demande sa destruction."""
        request = record.request
        condition = GateCondition.timer(
            self._remaining_wait(record, S.TERMINATING_OLD, request.termination_wait_duration)
        )
        result = await self._run_gate(record, "termination_wait", condition)
        if not result.cleared:
            await self._state_machine.apply_event(
                record, E.APPROVAL_REJECTED, result.reason, result.actor or "controller"
            )
            return

        retiring = record.active_environment
        self._schedule_teardown(record, retiring.environment_id, "Termination wait elapsed")
        await self._state_machine.apply_event(
            record, E.OLD_TERMINATED, f"Teardown of {retiring.environment_id} requested"
        )

    async def _handle_rolling_back(self, record: DeploymentRecord) -> None:
        """Restaure le routage d'avant bascule et abandonne le candidat."""
        try:
            result = await self._rollback.rollback(record)
        except RollbackError as e:
            self._log(record).critical(f"Rollback failed: {e}")
            await self._state_machine.apply_event(record, E.ROLLBACK_COMPLETED, f"Rollback incomplete: {e}")
            return

        candidate = record.candidate_environment
        if candidate is not None:
            await self._validator.stop(candidate.environment_id)
            record.candidate_environment = candidate.with_role(EnvironmentRole.CANDIDATE)
        if record.active_environment is not None:
            record.active_environment = record.active_environment.with_role(EnvironmentRole.ACTIVE)
        await self._sync_weights(record)

        for environment_id in result.environments_to_teardown:
            self._schedule_teardown(record, environment_id, "Rollback")

        reason = "Routing restored" if result.routing_reverted else "Candidate abandoned before exposure"
        await self._state_machine.apply_event(record, E.ROLLBACK_COMPLETED, reason)

    # ═══════════════════════════════════════════════════════════════════════
    # OUTILS
    # ═══════════════════════════════════════════════════════════════════════

    async def _resolve_active(self, record: DeploymentRecord) -> Optional[Environment]:
        """Environnement dominant de la table du listener principal."""
        snapshot = await self._router.get_weights(record.listener_id)
        if not snapshot.weights:
            return None
        environment_id = snapshot.dominant()
        environment = await self._provisioner.describe_environment(environment_id)
        if environment is None:
            return None
        return environment.with_role(EnvironmentRole.ACTIVE).with_weight(snapshot.weight_of(environment_id))

    async def _request_environment(self, record: DeploymentRecord, spec: EnvironmentSpec) -> str:
        """Demande de capacité; réconciliée si le déploiement a changé d'état entre-temps."""
        operation_id = await self._provisioner.request_environment(spec)
        if record.state is not S.PROVISIONING:
            self._reconcile_late_environment(record, operation_id)
        return operation_id

    async def _poll_provisioning(self, operation_id: str, timeout: float) -> ProvisionStatus:
        """
        Interroge l'opération jusqu'à READY/FAILED.

        Raises:
            ProvisionError: Timeout de provisioning
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            status = await self._provisioner.poll_operation(operation_id)
            if status.state is not ProvisionState.IN_PROGRESS:
                return status
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ProvisionError(f"Provisioning timed out after {timeout:.1f}s")
            await asyncio.sleep(min(self._poll_interval, remaining))

    def _reconcile_late_environment(self, record: DeploymentRecord, operation_id: str) -> None:
        """Détruit un environnement dont le provisioning aboutit après abandon."""

        async def _reconcile() -> None:
            timeout = self._timeouts.get_timeout(TimeoutType.PROVISIONING, record.listener_id)
            try:
                status = await self._poll_provisioning(operation_id, timeout)
            except ProvisionError:
                self._log(record).warn(f"Late provisioning {operation_id} never completed")
                return
            if status.state is ProvisionState.READY and status.environment is not None:
                self._schedule_teardown(record, status.environment.environment_id, "Provisioned after abort")

        self._spawn(_reconcile(), f"reconcile-{operation_id}")

    async def _run_gate(self, record: DeploymentRecord, name: str, condition: GateCondition) -> GateResult:
        """Ouvre une porte, surveillée par le validateur de santé."""
        gate = ApprovalGate(condition, name)
        self._gates[record.request_id] = gate
        watcher = self._spawn(self._watch_health(record, gate), f"{name}-watch-{record.request_id}")
        self._log(record).info(f"Gate {name} open", kind=condition.kind.value, duration=condition.duration)
        try:
            return await gate.wait()
        finally:
            watcher.cancel()
            if self._gates.get(record.request_id) is gate:
                del self._gates[record.request_id]

    async def _watch_health(self, record: DeploymentRecord, gate: ApprovalGate) -> None:
        """Lève une alarme si le candidat devient UNHEALTHY pendant la porte."""
        candidate = record.candidate_environment
        if candidate is None:
            return
        await self._validator.evaluate(candidate, self._health_spec(record))
        verdict = await self._validator.wait_for_verdict(
            candidate.environment_id, None, frozenset({VerdictStatus.UNHEALTHY})
        )
        if verdict is not None and verdict.verdict is VerdictStatus.UNHEALTHY and gate.decision is None:
            # Tâche séparée: le watcher est annulé dès que la porte se ferme
            self._spawn(
                self.raise_alarm(
                    record.request_id,
                    f"Candidate unhealthy during {gate.name}: {verdict.consecutive_failures} failed probes",
                    actor="health-validator",
                ),
                f"alarm-{record.request_id}",
            )

    def _interrupt(self, record: DeploymentRecord, reason: str) -> None:
        """Réveille le driver et abandonne la porte ouverte."""
        event = self._interrupts.get(record.request_id)
        if event is not None:
            event.set()
        gate = self._gates.get(record.request_id)
        if gate is not None:
            gate.abort(reason)

    async def _interruptible(self, record: DeploymentRecord, awaitable: Awaitable[T], detach: bool = False) -> T:
        """
        Attend awaitable sauf interruption du déploiement.

        Args:
            detach: Laisse l'appel se terminer en tâche de fond si interrompu
                (appels collaborateurs), sinon l'annule (attentes en lecture)

        Raises:
            _Interrupted: Le déploiement a changé d'état entre-temps
        """
        interrupt = self._interrupts.setdefault(record.request_id, asyncio.Event())
        task = asyncio.ensure_future(awaitable)
        if interrupt.is_set():
            task.cancel()
            raise _Interrupted()

        waiter = asyncio.create_task(interrupt.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        if detach:
            self._track(task)
        else:
            task.cancel()
        raise _Interrupted()

    def _schedule_teardown(self, record: DeploymentRecord, environment_id: str, reason: str) -> None:
        record.teardown_status[environment_id] = TeardownStatus.SCHEDULED.value

        async def _on_status(env_id: str, status: TeardownStatus) -> None:
            record.teardown_status[env_id] = status.value
            await self._store.save(record)

        self._teardown.schedule(
            environment_id,
            request_id=record.request_id,
            listener_id=record.listener_id,
            reason=reason,
            on_status=_on_status,
        )

    async def _sync_weights(self, record: DeploymentRecord) -> None:
        """Aligne traffic_weight des environnements sur la table principale."""
        snapshot = await self._router.get_weights(record.listener_id)
        if record.active_environment is not None:
            record.active_environment = record.active_environment.with_weight(
                snapshot.weight_of(record.active_environment.environment_id)
            )
        if record.candidate_environment is not None:
            record.candidate_environment = record.candidate_environment.with_weight(
                snapshot.weight_of(record.candidate_environment.environment_id)
            )
        await self._store.save(record)

    def _health_spec(self, record: DeploymentRecord) -> HealthCheckSpec:
        return record.request.health_check or self._default_health_check

    def _remaining(self, record: DeploymentRecord, state: DeploymentState, timeout_type: TimeoutType) -> float:
        """Timeout restant d'une attente, depuis l'entrée dans state."""
        total = self._timeouts.get_timeout(timeout_type, record.listener_id)
        return self._remaining_wait(record, state, total)

    def _remaining_wait(self, record: DeploymentRecord, state: DeploymentState, total: float) -> float:
        entered = record.entered_at(state) or _utcnow()
        return max(0.0, total - (_utcnow() - entered).total_seconds())

    def _deployment_budget_left(self, record: DeploymentRecord) -> float:
        budget = self._timeouts.get_timeout(TimeoutType.DEPLOYMENT, record.listener_id)
        return max(0.0, budget - (_utcnow() - record.started_at).total_seconds())

    def _lock_for(self, listener_id: str) -> asyncio.Lock:
        if listener_id not in self._submit_locks:
            self._submit_locks[listener_id] = asyncio.Lock()
        return self._submit_locks[listener_id]

    @staticmethod
    def _listeners_of(request: DeploymentRequest) -> List[str]:
        listeners = [request.listener_id]
        if request.test_listener_id:
            listeners.append(request.test_listener_id)
        return listeners

    def _register(self, record: DeploymentRecord) -> None:
        self._records[record.request_id] = record
        self._interrupts[record.request_id] = asyncio.Event()
        for listener_id in self._listeners_of(record.request):
            self._in_flight[listener_id] = record.request_id

    async def _require(self, request_id: str) -> DeploymentRecord:
        record = self._records.get(request_id)
        if record is None:
            record = await self._store.get(request_id)
        if record is None:
            raise DeploymentNotFoundError(f"Unknown deployment {request_id}", request_id)
        return record

    @staticmethod
    def _snapshot(record: DeploymentRecord) -> DeploymentRecord:
        """Copie détachée du record (lecture seule côté appelant)."""
        copy = DeploymentRecord.from_dict(record.to_dict())
        copy.request = record.request
        return copy

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._track(task)
        return task

    def _track(self, task: asyncio.Future) -> None:
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Future) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, _Interrupted):
            self._logger.error(f"Background task failed: {error}", error_type=type(error).__name__)

    def _log(self, record: DeploymentRecord) -> ContextualLogger:
        return self._logger.with_context(correlation_id=record.request_id, listener_id=record.listener_id)

    async def _emit_operator_action(
        self,
        record: DeploymentRecord,
        action: str,
        actor: str,
        reason: str,
        effective: bool,
    ) -> None:
        """Audit d'une action opérateur."""
        self._log(record).info(f"Operator {action} by {actor}", reason=reason, effective=effective)
        await self._audit.emit_event(
            event_type=AuditEventType.OPERATOR_ACTION,
            request_id=record.request_id,
            listener_id=record.listener_id,
            action=action,
            actor=actor,
            metadata={"reason": reason, "effective": effective, "state": record.state.value},
        )

"""
BASCULE - Doublures de test
Provisioner, sonde et contrôleur câblés en mémoire.
"""

import asyncio
from typing import Callable, Dict, List, Optional

from src.audit import AuditEmitter, AuditEventType
from src.core.crypto_provider import CryptoProvider
from src.core.interfaces import TimeoutConfig
from src.core.timeout_manager import TimeoutManager
from src.deployment import (
    DeploymentController,
    DeploymentRequest,
    DeploymentState,
    DeploymentStrategy,
    Environment,
    EnvironmentRole,
    EnvironmentSpec,
    IEnvironmentProvisioner,
    InMemoryRecordStore,
    ProvisionError,
    ProvisionState,
    ProvisionStatus,
    TeardownError,
    TeardownWorker,
)
from src.health import HealthCheckSpec, HealthValidator
from src.logging import LogConfig, LogLevel, StructuredLogger
from src.network import IEndpointProber, ProbeResponse, ProbeResult, RetryConfig, RetryHandler
from src.routing import InMemoryRoutingBackend, TrafficRouter


# ═══════════════════════════════════════════════════════════════════════════════
# DOUBLURES
# ═══════════════════════════════════════════════════════════════════════════════


class FakeProvisioner(IEnvironmentProvisioner):
    """Provisioner en mémoire, opérations prêtes après ready_after polls."""

    def __init__(
        self,
        ready_after: int = 0,
        fail_request: bool = False,
        fail_operation: bool = False,
        teardown_failures: int = 0,
    ) -> None:
        self.ready_after = ready_after
        self.fail_request = fail_request
        self.fail_operation = fail_operation
        self.teardown_failures = teardown_failures
        self.environments: Dict[str, Environment] = {}
        self.operations: Dict[str, dict] = {}
        self.requests: List[EnvironmentSpec] = []
        self.torn_down: List[str] = []
        self.teardown_attempts = 0

    def add_environment(self, environment: Environment) -> Environment:
        self.environments[environment.environment_id] = environment
        return environment

    async def request_environment(self, spec: EnvironmentSpec) -> str:
        if self.fail_request:
            raise ProvisionError("capacity request refused", spec.request_id)
        self.requests.append(spec)
        operation_id = f"op-{len(self.requests)}"
        environment_id = f"env-{spec.request_id}"
        self.operations[operation_id] = {
            "polls": 0,
            "environment": Environment(
                environment_id=environment_id,
                role=EnvironmentRole.CANDIDATE,
                replica_set_handle=f"rs-{environment_id}",
                endpoint=f"http://{environment_id}.internal",
                image_ref=spec.image_ref,
                replica_count=spec.replica_count,
            ),
        }
        return operation_id

    async def poll_operation(self, operation_id: str) -> ProvisionStatus:
        entry = self.operations[operation_id]
        entry["polls"] += 1
        if self.fail_operation:
            return ProvisionStatus(operation_id, ProvisionState.FAILED, message="insufficient capacity")
        if entry["polls"] <= self.ready_after:
            return ProvisionStatus(operation_id, ProvisionState.IN_PROGRESS)
        environment = entry["environment"]
        self.environments[environment.environment_id] = environment
        return ProvisionStatus(operation_id, ProvisionState.READY, environment)

    async def describe_environment(self, environment_id: str) -> Optional[Environment]:
        return self.environments.get(environment_id)

    async def teardown_environment(self, environment_id: str) -> None:
        self.teardown_attempts += 1
        if self.teardown_failures > 0:
            self.teardown_failures -= 1
            raise TeardownError(f"teardown of {environment_id} refused")
        self.torn_down.append(environment_id)
        self.environments.pop(environment_id, None)


class FakeProber(IEndpointProber):
    """Sonde simulée: santé pilotée par environnement (sain par défaut)."""

    def __init__(self) -> None:
        self.unhealthy: set = set()
        self.calls: List[str] = []

    def set_healthy(self, environment_id: str, healthy: bool) -> None:
        if healthy:
            self.unhealthy.discard(environment_id)
        else:
            self.unhealthy.add(environment_id)

    async def probe(self, url, timeout, expected=None) -> ProbeResult:
        self.calls.append(url)
        failing = any(f"//{env}." in url for env in self.unhealthy)
        response = ProbeResponse(status_code=503 if failing else 200)
        success = expected(response) if expected else not failing
        return ProbeResult(url=url, success=success, status_code=response.status_code)


# ═══════════════════════════════════════════════════════════════════════════════
# FABRIQUES
# ═══════════════════════════════════════════════════════════════════════════════


FAST_HEALTH = HealthCheckSpec(
    path="/health",
    interval_seconds=0.01,
    timeout_seconds=0.01,
    healthy_threshold_count=2,
    unhealthy_threshold_count=2,
)

FAST_TIMEOUTS = TimeoutConfig(
    provisioning=1.0,
    validation=1.0,
    approval=1.0,
    teardown=1.0,
    routing=1.0,
    deployment=5.0,
)


def blue_environment(weight: int = 100) -> Environment:
    return Environment(
        environment_id="env-blue",
        role=EnvironmentRole.ACTIVE,
        replica_set_handle="rs-blue",
        endpoint="http://env-blue.internal",
        traffic_weight=weight,
        image_ref="registry.example.com/shop/api:1.0.0",
        replica_count=3,
    )


def make_request(
    request_id: str = "req-1",
    listener_id: str = "blue-80",
    soak_duration: float = 0.0,
    termination_wait_duration: float = 0.0,
    **overrides,
) -> DeploymentRequest:
    """Requête par défaut: tout d'un coup, santé rapide."""
    params = dict(
        request_id=request_id,
        listener_id=listener_id,
        target_image_ref="registry.example.com/shop/api:1.1.0",
        soak_duration=soak_duration,
        termination_wait_duration=termination_wait_duration,
        strategy=DeploymentStrategy.all_at_once(),
        health_check=FAST_HEALTH,
    )
    params.update(overrides)
    return DeploymentRequest(**params)


async def wait_until(predicate: Callable[[], object], timeout: float = 2.0) -> None:
    """Attend qu'un prédicat devienne vrai (échec du test sinon)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        await asyncio.sleep(0.005)


class Harness:
    """Contrôleur câblé sur des doublures en mémoire."""

    def __init__(
        self,
        timeouts: TimeoutConfig = FAST_TIMEOUTS,
        atomic: bool = True,
        provisioner: Optional[FakeProvisioner] = None,
    ) -> None:
        self.logger = StructuredLogger(
            "bascule-test",
            LogConfig(min_level=LogLevel.DEBUG),
            output_handler=lambda line: None,
        )
        self.audit = AuditEmitter(CryptoProvider(), self.logger)
        self.provisioner = provisioner or FakeProvisioner()
        self.provisioner.add_environment(blue_environment())
        self.backend = InMemoryRoutingBackend(atomic=atomic, initial={"blue-80": {"env-blue": 100}})
        self.router = TrafficRouter(self.backend, self.audit, self.logger)
        self.prober = FakeProber()
        self.validator = HealthValidator(self.prober, self.logger)
        self.store = InMemoryRecordStore()
        self.teardown = TeardownWorker(
            self.provisioner,
            retry_handler=RetryHandler(),
            retry_config=RetryConfig(
                max_attempts=3,
                initial_delay=0.0,
                max_delay=0.0,
                retryable_exceptions=(TeardownError,),
            ),
            audit_emitter=self.audit,
            logger=self.logger,
            attempt_timeout=timeouts.teardown,
        )
        self.timeout_manager = TimeoutManager(timeouts)
        self.controller = DeploymentController(
            provisioner=self.provisioner,
            router=self.router,
            validator=self.validator,
            record_store=self.store,
            audit_emitter=self.audit,
            logger=self.logger,
            timeout_manager=self.timeout_manager,
            teardown_worker=self.teardown,
            poll_interval=0.01,
        )

    async def weights(self, listener_id: str = "blue-80") -> Dict[str, int]:
        snapshot = await self.router.get_weights(listener_id)
        return dict(snapshot.weights)

    async def reach(self, request_id: str, state: DeploymentState, gate: Optional[str] = None) -> None:
        """Attend que le déploiement atteigne state (et ouvre gate si fourni)."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2.0
        while True:
            status = await self.controller.get_status(request_id)
            if status["state"] == state.value and (gate is None or status["open_gate"] == gate):
                return
            if loop.time() > deadline:
                raise AssertionError(f"{request_id} stuck in {status['state']}, expected {state.value}")
            await asyncio.sleep(0.005)

    def routing_changes(self, request_id: str) -> List[Dict[str, int]]:
        """Tables successives du listener principal, d'après l'audit."""
        return [
            e.metadata["current"]
            for e in self.audit.get_events(request_id=request_id, event_types=[AuditEventType.ROUTING_CHANGE])
            if e.listener_id == "blue-80"
        ]

    async def close(self) -> None:
        await self.controller.close()
        await self.teardown.drain(timeout=1.0)



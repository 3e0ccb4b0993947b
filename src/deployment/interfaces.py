"""
LOT 6: Interfaces Deployment

Modèle de données et contrats du déploiement blue/green.

Invariants:
    Un seul environnement ACTIVE par listener hors transition.
    Un seul CANDIDATE pendant un déploiement.
    Une seule requête en vol par listener.
    L'historique des transitions est en ajout seul.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..health.interfaces import HealthCheckSpec


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════


class EnvironmentRole(Enum):
    """Rôle d'un environnement vis-à-vis d'un listener."""

    ACTIVE = "ACTIVE"
    CANDIDATE = "CANDIDATE"
    RETIRING = "RETIRING"


class DeploymentState(Enum):
    """États du cycle de déploiement."""

    PENDING = "PENDING"
    PROVISIONING = "PROVISIONING"
    VALIDATING = "VALIDATING"
    SHIFTING_TRAFFIC = "SHIFTING_TRAFFIC"
    SOAKING = "SOAKING"
    PROMOTING = "PROMOTING"
    TERMINATING_OLD = "TERMINATING_OLD"
    SUCCEEDED = "SUCCEEDED"
    ROLLING_BACK = "ROLLING_BACK"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentState.SUCCEEDED, DeploymentState.FAILED)


class DeploymentEvent(Enum):
    """Événements pilotant la machine à états."""

    # Progression
    START_PROVISIONING = "START_PROVISIONING"
    PROVISIONED = "PROVISIONED"
    VALIDATION_PASSED = "VALIDATION_PASSED"
    TRAFFIC_SHIFTED = "TRAFFIC_SHIFTED"
    SOAK_CLEARED = "SOAK_CLEARED"
    PROMOTED = "PROMOTED"
    OLD_TERMINATED = "OLD_TERMINATED"
    ROLLBACK_COMPLETED = "ROLLBACK_COMPLETED"

    # Échecs
    PROVISION_FAILED = "PROVISION_FAILED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    VALIDATION_TIMEOUT = "VALIDATION_TIMEOUT"
    ROUTING_FAILED = "ROUTING_FAILED"
    ALARM_RAISED = "ALARM_RAISED"
    APPROVAL_REJECTED = "APPROVAL_REJECTED"
    APPROVAL_TIMEOUT = "APPROVAL_TIMEOUT"
    ABORTED = "ABORTED"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"


class StrategyType(Enum):
    """Stratégie de bascule du trafic."""

    ALL_AT_ONCE = "ALL_AT_ONCE"
    CANARY = "CANARY"


class ApprovalMode(Enum):
    """Mode de la porte de soak: minuterie ou signal opérateur."""

    TIMER = "TIMER"
    MANUAL = "MANUAL"


class ProvisionState(Enum):
    """État d'une opération de provisioning asynchrone."""

    IN_PROGRESS = "IN_PROGRESS"
    READY = "READY"
    FAILED = "FAILED"


class TeardownStatus(Enum):
    """Suivi de destruction d'un environnement."""

    SCHEDULED = "SCHEDULED"
    RETRYING = "RETRYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# ═══════════════════════════════════════════════════════════════════════════════
# DATACLASSES
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Environment:
    """
    Ensemble de réplicas exécutant une version unique du service.

    Immuable: with_role / with_weight retournent des copies.
    """

    environment_id: str
    role: EnvironmentRole
    replica_set_handle: str
    endpoint: str
    traffic_weight: int = 0
    image_ref: str = ""
    replica_count: int = 1

    def with_role(self, role: EnvironmentRole) -> "Environment":
        return replace(self, role=role)

    def with_weight(self, weight: int) -> "Environment":
        if not 0 <= weight <= 100:
            raise ValueError(f"traffic_weight must be within 0..100, got {weight}")
        return replace(self, traffic_weight=weight)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment_id": self.environment_id,
            "role": self.role.value,
            "replica_set_handle": self.replica_set_handle,
            "endpoint": self.endpoint,
            "traffic_weight": self.traffic_weight,
            "image_ref": self.image_ref,
            "replica_count": self.replica_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Environment":
        return cls(
            environment_id=data["environment_id"],
            role=EnvironmentRole(data["role"]),
            replica_set_handle=data["replica_set_handle"],
            endpoint=data["endpoint"],
            traffic_weight=data.get("traffic_weight", 0),
            image_ref=data.get("image_ref", ""),
            replica_count=data.get("replica_count", 1),
        )


@dataclass(frozen=True)
class DeploymentStrategy:
    """Stratégie de bascule: tout d'un coup ou paliers canary."""

    type: StrategyType = StrategyType.ALL_AT_ONCE
    steps: Tuple[int, ...] = ()

    @classmethod
    def all_at_once(cls) -> "DeploymentStrategy":
        return cls(StrategyType.ALL_AT_ONCE, ())

    @classmethod
    def canary(cls, *steps: int) -> "DeploymentStrategy":
        return cls(StrategyType.CANARY, tuple(steps))

    @property
    def is_canary(self) -> bool:
        return self.type is StrategyType.CANARY

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "steps": list(self.steps)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentStrategy":
        return cls(StrategyType(data["type"]), tuple(data.get("steps", ())))


@dataclass(frozen=True)
class DeploymentRequest:
    """
    Requête de déploiement, immuable une fois acceptée.

    Durées en secondes. test_listener_id active le mode listener de test:
    le candidat est exposé sur ce listener, puis les tables sont échangées.
    """

    request_id: str
    listener_id: str
    target_image_ref: str
    soak_duration: float
    termination_wait_duration: float
    strategy: DeploymentStrategy = field(default_factory=DeploymentStrategy.all_at_once)
    approval_mode: ApprovalMode = ApprovalMode.TIMER
    test_listener_id: Optional[str] = None
    health_check: Optional[HealthCheckSpec] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "listener_id": self.listener_id,
            "target_image_ref": self.target_image_ref,
            "soak_duration": self.soak_duration,
            "termination_wait_duration": self.termination_wait_duration,
            "strategy": self.strategy.to_dict(),
            "approval_mode": self.approval_mode.value,
            "test_listener_id": self.test_listener_id,
            "health_check": self.health_check.to_dict() if self.health_check else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentRequest":
        health = data.get("health_check")
        return cls(
            request_id=data["request_id"],
            listener_id=data["listener_id"],
            target_image_ref=data["target_image_ref"],
            soak_duration=data["soak_duration"],
            termination_wait_duration=data["termination_wait_duration"],
            strategy=DeploymentStrategy.from_dict(data.get("strategy") or {"type": "ALL_AT_ONCE"}),
            approval_mode=ApprovalMode(data.get("approval_mode", ApprovalMode.TIMER.value)),
            test_listener_id=data.get("test_listener_id"),
            health_check=HealthCheckSpec.from_dict(health) if health else None,
        )


@dataclass(frozen=True)
class StateTransition:
    """Transition appliquée, en ajout seul dans l'historique."""

    from_state: DeploymentState
    to_state: DeploymentState
    event: DeploymentEvent
    timestamp: datetime = field(default_factory=_utcnow)
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "event": self.event.value,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateTransition":
        return cls(
            from_state=DeploymentState(data["from_state"]),
            to_state=DeploymentState(data["to_state"]),
            event=DeploymentEvent(data["event"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            reason=data.get("reason", ""),
        )


@dataclass
class DeploymentRecord:
    """
    État d'un déploiement, possédé par le contrôleur.

    active_environment: environnement qui servait le listener à la
    soumission; il passe RETIRING à la promotion sans changer de champ.
    candidate_environment: environnement provisionné; il passe ACTIVE à la
    promotion. serving_environment() donne celui qui sert effectivement.

    pre_shift_routing: tables {listener_id: {environment_id: weight}}
    relevées juste avant la première modification de routage.
    """

    request: DeploymentRequest
    state: DeploymentState = DeploymentState.PENDING
    active_environment: Optional[Environment] = None
    candidate_environment: Optional[Environment] = None
    history: List[StateTransition] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    failure_kind: Optional[str] = None
    pre_shift_routing: Dict[str, Dict[str, int]] = field(default_factory=dict)
    provision_operation_id: Optional[str] = None
    teardown_status: Dict[str, str] = field(default_factory=dict)

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def listener_id(self) -> str:
        return self.request.listener_id

    def has_event(self, event: DeploymentEvent) -> bool:
        """True si l'événement a déjà été appliqué."""
        return any(t.event is event for t in self.history)

    def entered_at(self, state: DeploymentState) -> Optional[datetime]:
        """Horodatage de la dernière entrée dans state."""
        for transition in reversed(self.history):
            if transition.to_state is state:
                return transition.timestamp
        return None

    def serving_environment(self) -> Optional[Environment]:
        """Environnement de rôle ACTIVE (le candidat après promotion)."""
        for environment in (self.candidate_environment, self.active_environment):
            if environment is not None and environment.role is EnvironmentRole.ACTIVE:
                return environment
        return None

    def traffic_exposed(self) -> bool:
        """True si une table de routage a été modifiée pour le candidat."""
        return bool(self.pre_shift_routing)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request": self.request.to_dict(),
            "state": self.state.value,
            "active_environment": self.active_environment.to_dict() if self.active_environment else None,
            "candidate_environment": (
                self.candidate_environment.to_dict() if self.candidate_environment else None
            ),
            "history": [t.to_dict() for t in self.history],
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "failure_reason": self.failure_reason,
            "failure_kind": self.failure_kind,
            "pre_shift_routing": {k: dict(v) for k, v in self.pre_shift_routing.items()},
            "provision_operation_id": self.provision_operation_id,
            "teardown_status": dict(self.teardown_status),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentRecord":
        active = data.get("active_environment")
        candidate = data.get("candidate_environment")
        return cls(
            request=DeploymentRequest.from_dict(data["request"]),
            state=DeploymentState(data["state"]),
            active_environment=Environment.from_dict(active) if active else None,
            candidate_environment=Environment.from_dict(candidate) if candidate else None,
            history=[StateTransition.from_dict(t) for t in data.get("history", [])],
            started_at=_parse_dt(data.get("started_at")) or _utcnow(),
            completed_at=_parse_dt(data.get("completed_at")),
            failure_reason=data.get("failure_reason"),
            failure_kind=data.get("failure_kind"),
            pre_shift_routing={k: dict(v) for k, v in data.get("pre_shift_routing", {}).items()},
            provision_operation_id=data.get("provision_operation_id"),
            teardown_status=dict(data.get("teardown_status", {})),
        )


@dataclass(frozen=True)
class EnvironmentSpec:
    """Demande de capacité adressée au provisioner."""

    request_id: str
    listener_id: str
    image_ref: str
    replica_count: int
    template_environment_id: Optional[str] = None


@dataclass(frozen=True)
class ProvisionStatus:
    """État d'une opération de provisioning."""

    operation_id: str
    state: ProvisionState
    environment: Optional[Environment] = None
    message: str = ""


# ═══════════════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════════════


class DeploymentError(Exception):
    """Erreur de déploiement (base)."""

    kind = "DeploymentError"

    def __init__(self, message: str, request_id: Optional[str] = None) -> None:
        self.request_id = request_id
        super().__init__(message)


class ConflictError(DeploymentError):
    """Un déploiement est déjà en vol sur ce listener."""

    kind = "ConflictError"


class InvalidRequestError(DeploymentError):
    """Requête rejetée par la validation."""

    kind = "InvalidRequestError"

    def __init__(self, message: str, request_id: Optional[str] = None, errors: Optional[List[Any]] = None) -> None:
        self.errors = errors or []
        super().__init__(message, request_id)


class ProvisionError(DeploymentError):
    """Échec ou timeout du provisioning."""

    kind = "ProvisionError"


class ValidationFailure(DeploymentError):
    """Verdict UNHEALTHY du candidat."""

    kind = "ValidationFailure"


class ValidationTimeout(DeploymentError):
    """Aucun verdict terminal dans le délai de validation."""

    kind = "ValidationTimeout"


class ApprovalRejected(DeploymentError):
    """Porte rejetée (opérateur ou alarme)."""

    kind = "ApprovalRejected"


class ApprovalTimeout(DeploymentError):
    """Aucun signal opérateur avant expiration."""

    kind = "ApprovalTimeout"


class TeardownError(DeploymentError):
    """Échec de destruction d'un environnement (non fatal)."""

    kind = "TeardownError"


class InvalidTransitionError(DeploymentError):
    """Événement ni valide ni rejoué dans l'état courant."""

    kind = "InvalidTransitionError"

    def __init__(self, state: DeploymentState, event: DeploymentEvent, request_id: Optional[str] = None) -> None:
        self.state = state
        self.event = event
        super().__init__(f"Event {event.value} not allowed in state {state.value}", request_id)


class DeploymentNotFoundError(DeploymentError):
    """request_id inconnu."""

    kind = "DeploymentNotFoundError"


# ═══════════════════════════════════════════════════════════════════════════════
# INTERFACES
# ═══════════════════════════════════════════════════════════════════════════════


class IEnvironmentProvisioner(ABC):
    """
    Provisioning de capacité (collaborateur externe).

    Les opérations sont asynchrones: request_environment retourne un
    identifiant d'opération à interroger via poll_operation.
    """

    @abstractmethod
    async def request_environment(self, spec: EnvironmentSpec) -> str:
        """
        Demande un nouvel environnement.

        Returns:
            operation_id

        Raises:
            ProvisionError: Demande refusée
        """
        pass

    @abstractmethod
    async def poll_operation(self, operation_id: str) -> ProvisionStatus:
        """État courant d'une opération."""
        pass

    @abstractmethod
    async def describe_environment(self, environment_id: str) -> Optional[Environment]:
        """Description d'un environnement existant (None si inconnu)."""
        pass

    @abstractmethod
    async def teardown_environment(self, environment_id: str) -> None:
        """
        Détruit un environnement.

        Raises:
            TeardownError: Destruction refusée ou en échec
        """
        pass


class IDeploymentRecordStore(ABC):
    """Persistance des DeploymentRecord (reprise après redémarrage)."""

    @abstractmethod
    async def save(self, record: DeploymentRecord) -> None:
        pass

    @abstractmethod
    async def get(self, request_id: str) -> Optional[DeploymentRecord]:
        pass

    @abstractmethod
    async def list_records(self) -> List[DeploymentRecord]:
        pass

    @abstractmethod
    async def list_in_flight(self, listener_id: Optional[str] = None) -> List[DeploymentRecord]:
        """Records non terminaux, filtrés par listener si fourni."""
        pass

"""
LOT 6: Déploiement blue/green

Orchestration zero-downtime avec:
- Machine à états pure et rejouable
- Provisioning du candidat puis validation de santé
- Bascule tout d'un coup, canary ou via listener de test
- Portes de soak et d'attente de terminaison
- Rollback automatique vers le routage d'avant bascule
- Destruction asynchrone avec retries
"""

from .interfaces import (
    # Enums
    EnvironmentRole,
    DeploymentState,
    DeploymentEvent,
    StrategyType,
    ApprovalMode,
    ProvisionState,
    TeardownStatus,
    # Dataclasses
    Environment,
    DeploymentStrategy,
    DeploymentRequest,
    StateTransition,
    DeploymentRecord,
    EnvironmentSpec,
    ProvisionStatus,
    # Interfaces
    IEnvironmentProvisioner,
    IDeploymentRecordStore,
    # Exceptions
    DeploymentError,
    ConflictError,
    InvalidRequestError,
    ProvisionError,
    ValidationFailure,
    ValidationTimeout,
    ApprovalRejected,
    ApprovalTimeout,
    TeardownError,
    InvalidTransitionError,
    DeploymentNotFoundError,
)
from .state_machine import DeploymentStateMachine, next_state
from .approval_gate import ApprovalGate, GateCondition, GateKind, GateOutcome, GateResult
from .rollback_manager import RollbackError, RollbackManager, RollbackResult
from .teardown_worker import TeardownWorker
from .record_store import InMemoryRecordStore, JsonFileRecordStore, RecordStoreError
from .deployment_controller import DeploymentController

__all__ = [
    # Enums
    "EnvironmentRole",
    "DeploymentState",
    "DeploymentEvent",
    "StrategyType",
    "ApprovalMode",
    "ProvisionState",
    "TeardownStatus",
    "GateKind",
    "GateOutcome",
    # Dataclasses
    "Environment",
    "DeploymentStrategy",
    "DeploymentRequest",
    "StateTransition",
    "DeploymentRecord",
    "EnvironmentSpec",
    "ProvisionStatus",
    "GateCondition",
    "GateResult",
    "RollbackResult",
    # Interfaces
    "IEnvironmentProvisioner",
    "IDeploymentRecordStore",
    # Implementations
    "DeploymentStateMachine",
    "next_state",
    "ApprovalGate",
    "RollbackManager",
    "TeardownWorker",
    "InMemoryRecordStore",
    "JsonFileRecordStore",
    "DeploymentController",
    # Exceptions
    "DeploymentError",
    "ConflictError",
    "InvalidRequestError",
    "ProvisionError",
    "ValidationFailure",
    "ValidationTimeout",
    "ApprovalRejected",
    "ApprovalTimeout",
    "TeardownError",
    "InvalidTransitionError",
    "DeploymentNotFoundError",
    "RollbackError",
    "RecordStoreError",
]

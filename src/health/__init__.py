"""
LOT 4: Health

Validation de santé des environnements candidats:
- Sondes continues par environnement
- Fenêtre glissante et verdict à seuils
"""

from .interfaces import (
    # Enums
    VerdictStatus,
    # Dataclasses
    HealthCheckSpec,
    HealthVerdict,
    # Interfaces
    IHealthValidator,
)
from .health_validator import (
    HealthValidator,
    compute_verdict,
    TERMINAL_VERDICTS,
)

__all__ = [
    # Enums
    "VerdictStatus",
    # Dataclasses
    "HealthCheckSpec",
    "HealthVerdict",
    # Interfaces
    "IHealthValidator",
    # Implementations
    "HealthValidator",
    "compute_verdict",
    "TERMINAL_VERDICTS",
]

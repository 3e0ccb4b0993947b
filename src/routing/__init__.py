"""
LOT 5: Routing

Routage pondéré des listeners:
- Tables versionnées, somme des poids = 100
- Mise à jour atomique ou deux phases avec retour arrière
- Politiques de paliers canary
"""

from .interfaces import (
    # Constantes
    TOTAL_WEIGHT,
    # Dataclasses
    RoutingSnapshot,
    # Interfaces
    IRoutingBackend,
    IWeightPolicy,
    # Exceptions
    RoutingError,
)
from .memory_backend import InMemoryRoutingBackend
from .traffic_router import TrafficRouter, distribute_weights
from .weight_policy import LinearStepPolicy, StrategyStepPolicy

__all__ = [
    # Constantes
    "TOTAL_WEIGHT",
    # Dataclasses
    "RoutingSnapshot",
    # Interfaces
    "IRoutingBackend",
    "IWeightPolicy",
    # Implementations
    "InMemoryRoutingBackend",
    "TrafficRouter",
    "distribute_weights",
    "StrategyStepPolicy",
    "LinearStepPolicy",
    # Exceptions
    "RoutingError",
]

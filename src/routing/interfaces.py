"""
LOT 5: Routing - Interfaces

Contrats de routage pondéré des listeners vers les environnements.

Invariants:
    La somme des poids d'un listener vaut 100 dans tout état atteignable.
    Chaque poids est dans [0, 100].
    Une mise à jour rejetée laisse la table précédente intacte.
    Les lectures sont des snapshots versionnés, sans verrou.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Mapping

TOTAL_WEIGHT = 100


class RoutingError(Exception):
    """Mise à jour de routage rejetée ou partielle (table précédente conservée)."""

    def __init__(self, listener_id: str, message: str) -> None:
        self.listener_id = listener_id
        super().__init__(f"Routing error on {listener_id}: {message}")


@dataclass(frozen=True)
class RoutingSnapshot:
    """Table de routage versionnée d'un listener."""

    listener_id: str
    version: int
    weights: Mapping[str, int]
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def total(self) -> int:
        """Somme des poids."""
        return sum(self.weights.values())

    def weight_of(self, environment_id: str) -> int:
        """Poids d'un environnement (0 si absent)."""
        return self.weights.get(environment_id, 0)

    def dominant(self) -> str:
        """
        Environnement recevant le plus de trafic.

        Raises:
            ValueError: Si la table est vide
        """
        if not self.weights:
            raise ValueError(f"Routing table for {self.listener_id} is empty")
        return max(self.weights.items(), key=lambda item: item[1])[0]

    def to_dict(self) -> Dict[str, object]:
        return {
            "listener_id": self.listener_id,
            "version": self.version,
            "weights": dict(self.weights),
            "updated_at": self.updated_at.isoformat(),
        }


class IRoutingBackend(ABC):
    """
    Backend de routage (table de listener du load balancer).

    Collaborateur externe; InMemoryRoutingBackend en est la référence.
    """

    @property
    @abstractmethod
    def supports_atomic_update(self) -> bool:
        """True si apply_weights remplace la table en une opération."""
        pass

    @abstractmethod
    async def apply_weights(self, listener_id: str, weights: Mapping[str, int]) -> RoutingSnapshot:
        """
        Remplace la table complète d'un listener.

        Raises:
            RoutingError: Si le backend rejette la table
        """
        pass

    @abstractmethod
    async def set_target_weight(self, listener_id: str, environment_id: str, weight: int) -> None:
        """Modifie le poids d'une seule cible (poids 0 = cible détachée)."""
        pass

    @abstractmethod
    async def query_weights(self, listener_id: str) -> RoutingSnapshot:
        """Retourne la table courante."""
        pass


class IWeightPolicy(ABC):
    """Politique de progression des poids canary."""

    @abstractmethod
    def plan(self, steps: List[int]) -> List[int]:
        """
        Calcule la suite des poids candidats à appliquer.

        Args:
            steps: Paliers demandés (vide = bascule directe)

        Returns:
            Poids croissants du candidat sur le listener principal
        """
        pass

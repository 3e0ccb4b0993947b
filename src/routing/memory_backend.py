"""
LOT 5: Routing - In-Memory Backend

Backend de routage de référence: tables versionnées en mémoire.
"""

from typing import Dict, Mapping, Optional, Set

from .interfaces import TOTAL_WEIGHT, IRoutingBackend, RoutingError, RoutingSnapshot


class InMemoryRoutingBackend(IRoutingBackend):
    """
    Tables de listeners en mémoire.

    Chaque écriture produit un nouveau RoutingSnapshot (version + 1).
    Les cibles à poids 0 sont détachées de la table.
    """

    def __init__(
        self,
        atomic: bool = True,
        initial: Optional[Dict[str, Dict[str, int]]] = None,
    ) -> None:
        """
        Args:
            atomic: Le backend supporte-t-il le remplacement atomique
            initial: Tables initiales {listener_id: {environment_id: weight}}
        """
        self._atomic = atomic
        self._tables: Dict[str, RoutingSnapshot] = {}
        self._rejected_targets: Set[str] = set()
        for listener_id, weights in (initial or {}).items():
            self._tables[listener_id] = RoutingSnapshot(listener_id, 1, dict(weights))

    @property
    def supports_atomic_update(self) -> bool:
        return self._atomic

    def reject_target(self, environment_id: str) -> None:
        """Fait rejeter toute écriture visant cette cible (simulation de panne)."""
        self._rejected_targets.add(environment_id)

    def _next(self, listener_id: str, weights: Mapping[str, int]) -> RoutingSnapshot:
        current = self._tables.get(listener_id)
        version = current.version + 1 if current else 1
        cleaned = {env: w for env, w in weights.items() if w > 0}
        snapshot = RoutingSnapshot(listener_id, version, cleaned)
        self._tables[listener_id] = snapshot
        return snapshot

    async def apply_weights(self, listener_id: str, weights: Mapping[str, int]) -> RoutingSnapshot:
        if not self._atomic:
            raise RoutingError(listener_id, "backend does not support atomic updates")
        rejected = self._rejected_targets.intersection(weights)
        if rejected:
            raise RoutingError(listener_id, f"target rejected: {sorted(rejected)}")
        if weights and sum(weights.values()) != TOTAL_WEIGHT:
            raise RoutingError(listener_id, f"weights sum to {sum(weights.values())}")
        return self._next(listener_id, weights)

    async def set_target_weight(self, listener_id: str, environment_id: str, weight: int) -> None:
        if environment_id in self._rejected_targets:
            raise RoutingError(listener_id, f"target rejected: {environment_id}")
        current = self._tables.get(listener_id)
        weights = dict(current.weights) if current else {}
        weights[environment_id] = weight
        self._next(listener_id, weights)

    async def query_weights(self, listener_id: str) -> RoutingSnapshot:
        current = self._tables.get(listener_id)
        if current is None:
            return RoutingSnapshot(listener_id, 0, {})
        return current

"""
LOT 5: Routing - Traffic Router

Répartition pondérée du trafic d'un listener entre environnements.

Invariants:
    Somme des poids = 100 (ou table vide: listener détaché).
    Écritures sérialisées par listener (asyncio.Lock), lectures sans verrou.
    Mise à jour atomique si le backend la supporte, sinon application
    cible par cible puis vérification, avec retour arrière automatique.
"""

import asyncio
from typing import Dict, List, Mapping, Optional

from ..audit.interfaces import AuditEventType, IAuditEmitter
from ..logging.structured_logger import StructuredLogger
from .interfaces import TOTAL_WEIGHT, IRoutingBackend, RoutingError, RoutingSnapshot


def distribute_weights(
    current: Mapping[str, int],
    environment_id: str,
    weight: int,
) -> Dict[str, int]:
    """
    Calcule la table complète après affectation de weight à environment_id.

    Le reste (100 - weight) est réparti sur les autres cibles au prorata de
    leurs poids actuels, arrondi par plus forts restes.

    Raises:
        ValueError: Si weight hors bornes ou aucune cible pour porter le reste
    """
    if not 0 <= weight <= TOTAL_WEIGHT:
        raise ValueError(f"weight must be within 0..{TOTAL_WEIGHT}, got {weight}")

    others = {env: w for env, w in current.items() if env != environment_id}
    remainder = TOTAL_WEIGHT - weight

    if remainder > 0 and not others:
        raise ValueError(f"no other target to carry the remaining {remainder}%")

    target: Dict[str, int] = {environment_id: weight}
    if not others:
        return target

    base_total = sum(others.values())
    if base_total == 0:
        shares = {env: remainder / len(others) for env in others}
    else:
        shares = {env: remainder * w / base_total for env, w in others.items()}

    floors = {env: int(share) for env, share in shares.items()}
    leftover = remainder - sum(floors.values())
    by_fraction = sorted(others, key=lambda env: (-(shares[env] - floors[env]), env))
    for env in by_fraction[:leftover]:
        floors[env] += 1

    target.update(floors)
    return target


class TrafficRouter:
    """
    Routeur de trafic pondéré.

    Example:
        router = TrafficRouter(InMemoryRoutingBackend())
        await router.shift_weight("blue-80", "env-green", 10)
        snapshot = await router.get_weights("blue-80")
    """

    def __init__(
        self,
        backend: IRoutingBackend,
        audit_emitter: Optional[IAuditEmitter] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        """
        Args:
            backend: Backend de routage (load balancer)
            audit_emitter: Émetteur audit (événements ROUTING_CHANGE)
            logger: Logger structuré
        """
        self._backend = backend
        self._audit = audit_emitter
        self._logger = logger
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, listener_id: str) -> asyncio.Lock:
        if listener_id not in self._locks:
            self._locks[listener_id] = asyncio.Lock()
        return self._locks[listener_id]

    @staticmethod
    def validate_weights(listener_id: str, weights: Mapping[str, int]) -> None:
        """
        Vérifie une table complète.

        Raises:
            RoutingError: Poids hors bornes ou somme différente de 100
        """
        if not weights:
            return
        for environment_id, weight in weights.items():
            if not isinstance(weight, int) or isinstance(weight, bool):
                raise RoutingError(listener_id, f"weight of {environment_id} must be an integer")
            if not 0 <= weight <= TOTAL_WEIGHT:
                raise RoutingError(listener_id, f"weight of {environment_id} out of range: {weight}")
        total = sum(weights.values())
        if total != TOTAL_WEIGHT:
            raise RoutingError(listener_id, f"weights must sum to {TOTAL_WEIGHT}, got {total}")

    async def get_weights(self, listener_id: str) -> RoutingSnapshot:
        """Snapshot versionné courant, sans prendre le verrou d'écriture."""
        return await self._backend.query_weights(listener_id)

    async def shift_weight(
        self,
        listener_id: str,
        environment_id: str,
        weight: int,
        request_id: Optional[str] = None,
    ) -> RoutingSnapshot:
        """
        Affecte weight à une cible, le reste réparti sur les autres cibles.

        Args:
            listener_id: Listener modifié
            environment_id: Cible dont le poids change
            weight: Nouveau poids (0..100)
            request_id: Déploiement à l'origine du changement (audit)

        Returns:
            Nouveau snapshot

        Raises:
            RoutingError: Table invalide ou mise à jour rejetée
        """
        async with self._lock_for(listener_id):
            current = await self._backend.query_weights(listener_id)
            try:
                target = distribute_weights(current.weights, environment_id, weight)
            except ValueError as e:
                raise RoutingError(listener_id, str(e)) from e
            return await self._apply(listener_id, target, current, request_id)

    async def apply_weights(
        self,
        listener_id: str,
        weights: Mapping[str, int],
        request_id: Optional[str] = None,
    ) -> RoutingSnapshot:
        """
        Remplace la table complète d'un listener (promotion, rollback).

        Raises:
            RoutingError: Table invalide ou mise à jour rejetée
        """
        async with self._lock_for(listener_id):
            current = await self._backend.query_weights(listener_id)
            return await self._apply(listener_id, dict(weights), current, request_id)

    async def swap_listeners(
        self,
        primary_listener_id: str,
        test_listener_id: str,
        request_id: Optional[str] = None,
    ) -> List[RoutingSnapshot]:
        """
        Échange les tables de deux listeners (promotion en mode listener de test).

        Returns:
            [snapshot primaire, snapshot test]

        Raises:
            RoutingError: Table vide ou mise à jour rejetée (état initial restauré)
        """
        if primary_listener_id == test_listener_id:
            raise RoutingError(primary_listener_id, "cannot swap a listener with itself")

        first, second = sorted([primary_listener_id, test_listener_id])
        async with self._lock_for(first), self._lock_for(second):
            primary = await self._backend.query_weights(primary_listener_id)
            test = await self._backend.query_weights(test_listener_id)
            if not primary.weights or not test.weights:
                raise RoutingError(primary_listener_id, "cannot swap with an empty routing table")

            new_primary = await self._apply(
                primary_listener_id, dict(test.weights), primary, request_id
            )
            try:
                new_test = await self._apply(
                    test_listener_id, dict(primary.weights), test, request_id
                )
            except RoutingError:
                await self._apply(primary_listener_id, dict(primary.weights), new_primary, request_id)
                raise

        return [new_primary, new_test]

    async def _apply(
        self,
        listener_id: str,
        target: Dict[str, int],
        current: RoutingSnapshot,
        request_id: Optional[str],
    ) -> RoutingSnapshot:
        """Applique une table validée (atomique ou deux phases)."""
        self.validate_weights(listener_id, target)

        if self._backend.supports_atomic_update:
            snapshot = await self._backend.apply_weights(listener_id, target)
        else:
            snapshot = await self._apply_two_phase(listener_id, target, current)

        await self._record_change(listener_id, current, snapshot, request_id)
        return snapshot

    async def _apply_two_phase(
        self,
        listener_id: str,
        target: Dict[str, int],
        current: RoutingSnapshot,
    ) -> RoutingSnapshot:
        """
        Applique cible par cible puis vérifie la table obtenue.

        Toute erreur ou divergence restaure la table précédente.
        """
        touched = set(current.weights) | set(target)
        expected = {env: w for env, w in target.items() if w > 0}

        try:
            for environment_id in sorted(touched):
                await self._backend.set_target_weight(
                    listener_id, environment_id, target.get(environment_id, 0)
                )
            snapshot = await self._backend.query_weights(listener_id)
            observed = {env: w for env, w in snapshot.weights.items() if w > 0}
            if observed != expected:
                raise RoutingError(listener_id, f"verification failed: expected {expected}, got {observed}")
            return snapshot
        except Exception as e:
            await self._revert(listener_id, current, touched)
            if isinstance(e, RoutingError):
                raise
            raise RoutingError(listener_id, f"partial update reverted: {e}") from e

    async def _revert(self, listener_id: str, previous: RoutingSnapshot, touched: set) -> None:
        """Restaure la table précédente cible par cible (chaque cible tentée)."""
        if self._logger is not None:
            self._logger.warn(
                "Reverting partial routing update",
                listener_id=listener_id,
                restored_weights=dict(previous.weights),
            )
        for environment_id in sorted(touched):
            try:
                await self._backend.set_target_weight(
                    listener_id, environment_id, previous.weights.get(environment_id, 0)
                )
            except RoutingError as e:
                if self._logger is None:
                    raise
                self._logger.error(
                    f"Revert failed for target {environment_id}: {e}",
                    listener_id=listener_id,
                )

    async def _record_change(
        self,
        listener_id: str,
        previous: RoutingSnapshot,
        snapshot: RoutingSnapshot,
        request_id: Optional[str],
    ) -> None:
        """Journalise et audite un changement de routage."""
        if self._logger is not None:
            self._logger.info(
                "Routing updated",
                correlation_id=request_id,
                listener_id=listener_id,
                previous=dict(previous.weights),
                current=dict(snapshot.weights),
                version=snapshot.version,
            )
        if self._audit is not None and request_id:
            await self._audit.emit_event(
                event_type=AuditEventType.ROUTING_CHANGE,
                request_id=request_id,
                listener_id=listener_id,
                action="apply_weights",
                metadata={
                    "previous": dict(previous.weights),
                    "current": dict(snapshot.weights),
                    "version": snapshot.version,
                },
            )

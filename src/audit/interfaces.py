"""
LOT 2: Interfaces Audit & Tracabilité

Définit les contrats pour le flux d'audit du contrôleur: chaque transition
d'état, changement de routage et action opérateur produit un événement
signé cryptographiquement.

Invariants:
    Chaque transition d'état émet un événement (request_id, from, to, timestamp, reason).
    Un événement émis est immuable (frozen, haché SHA-384).
    Tout événement est signé ECDSA-P384.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from enum import Enum


class AuditEventType(Enum):
    """Types d'événements d'audit du cycle de déploiement."""
    # Cycle de vie
    DEPLOYMENT_SUBMITTED = "deployment_submitted"
    STATE_TRANSITION = "state_transition"

    # Routage
    ROUTING_CHANGE = "routing_change"

    # Actions opérateur (approve, reject, abort, alarm)
    OPERATOR_ACTION = "operator_action"

    # Santé
    HEALTH_ALARM = "health_alarm"

    # Récupération
    ROLLBACK = "rollback"
    TEARDOWN = "teardown"
    TEARDOWN_RETRY = "teardown_retry"


@dataclass(frozen=True)
class AuditEvent:
    """
    Événement d'audit signé cryptographiquement.

    Immutable pour garantir intégrité après signature.
    """
    event_id: str
    event_type: AuditEventType
    timestamp: datetime
    request_id: str
    listener_id: Optional[str]
    actor: str
    action: str
    metadata: Dict[str, Any]
    signature: Optional[str] = None  # Signature ECDSA-P384
    hash_value: Optional[str] = None  # SHA-384 de l'événement


# Sink collaborateur recevant chaque événement signé (bus, fichier, ...)
AuditSink = Callable[[AuditEvent], Any]


class IAuditEmitter(ABC):
    """
    Interface émetteur d'événements d'audit.

    Responsabilités:
        - Création événements audit
        - Signature cryptographique
        - Hachage SHA-384
        - Diffusion vers les sinks abonnés
    """

    @abstractmethod
    async def emit_event(
        self,
        event_type: AuditEventType,
        request_id: str,
        action: str,
        listener_id: Optional[str] = None,
        actor: str = "controller",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """
        Émet un événement d'audit signé.

        Args:
            event_type: Type d'événement
            request_id: Déploiement concerné
            action: Action effectuée
            listener_id: Listener concerné (optionnel)
            actor: Auteur (controller ou identité opérateur)
            metadata: Métadonnées additionnelles

        Returns:
            Événement signé et haché

        Raises:
            AuditEmitterError: Erreur création/signature
        """
        pass

    @abstractmethod
    def verify_event_signature(self, event: AuditEvent) -> bool:
        """
        Vérifie signature cryptographique d'un événement.

        Returns:
            True si signature valide
        """
        pass

    @abstractmethod
    def compute_event_hash(self, event: AuditEvent) -> str:
        """
        Calcule hash SHA-384 d'un événement.

        Returns:
            Hash SHA-384 hexadécimal
        """
        pass

    @abstractmethod
    def get_events(
        self,
        request_id: Optional[str] = None,
        event_types: Optional[List[AuditEventType]] = None,
    ) -> List[AuditEvent]:
        """
        Retourne l'historique local des événements émis.

        Args:
            request_id: Filtre par déploiement (optionnel)
            event_types: Filtre par types (optionnel)
        """
        pass

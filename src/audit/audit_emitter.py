"""
LOT 2: Audit Emitter Implementation

Émetteur d'événements d'audit signés: transitions d'état, changements de
routage, actions opérateur, destructions d'environnement.

Invariants:
    Signature ECDSA-P384 obligatoire pour tous les événements.
    Immutabilité garantie par hachage SHA-384.
    Historique local borné; la persistance longue durée appartient aux sinks.
"""

import base64
import hashlib
import inspect
import json
import uuid
from collections import deque
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from ..core.crypto_provider import CryptoProvider, verify_with_public_key
from ..logging.structured_logger import StructuredLogger
from .interfaces import AuditEvent, AuditEventType, AuditSink, IAuditEmitter

MAX_KEY_LENGTH = 100
MAX_STRING_LENGTH = 1000
MAX_LIST_ITEMS = 50
MAX_DEPTH = 5

_DROP = object()


class AuditEmitterError(Exception):
    """Erreur émission événement audit."""

    pass


def json_safe(value: Any, depth: int = MAX_DEPTH) -> Any:
    """
    Forme JSON canonique d'une valeur de métadonnées.

    Les Enum deviennent leur valeur, les chaînes et listes sont tronquées.
    Les objets non sérialisables et les niveaux trop profonds sont
    remplacés par _DROP.
    """
    if isinstance(value, Enum):
        value = value.value
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value[:MAX_STRING_LENGTH]
    if depth <= 0:
        return _DROP
    if isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            if not isinstance(key, str) or len(key) > MAX_KEY_LENGTH:
                continue
            item = json_safe(item, depth - 1)
            if item is not _DROP:
                cleaned[key] = item
        return cleaned
    if isinstance(value, (list, tuple)):
        items = (json_safe(item, depth - 1) for item in value[:MAX_LIST_ITEMS])
        return [item for item in items if item is not _DROP]
    return _DROP


class AuditEmitter(IAuditEmitter):
    """
    Émetteur d'événements d'audit avec signature cryptographique.

    Example:
        emitter = AuditEmitter(crypto_provider)
        event = await emitter.emit_event(
            AuditEventType.STATE_TRANSITION,
            request_id="req-42",
            action="PROVISIONING->VALIDATING",
            listener_id="blue-80",
            metadata={"from_state": "PROVISIONING", "to_state": "VALIDATING"},
        )
    """

    KEY_ID = "audit_key"

    def __init__(
        self,
        crypto_provider: CryptoProvider,
        logger: Optional[StructuredLogger] = None,
        max_events: int = 10000,
    ):
        """
        Args:
            crypto_provider: Fournisseur cryptographique pour signature
            logger: Logger structuré (échecs de sinks)
            max_events: Taille de l'historique local
        """
        self.crypto_provider = crypto_provider
        self._logger = logger
        self._events: Deque[AuditEvent] = deque(maxlen=max_events)
        self._sinks: List[AuditSink] = []

    def add_sink(self, sink: AuditSink) -> None:
        """Abonne un sink (sync ou async) à chaque événement émis."""
        self._sinks.append(sink)

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
        Émet événement d'audit signé.

        Args:
            event_type: Type d'événement
            request_id: Déploiement concerné
            action: Action effectuée
            listener_id: Listener concerné (optionnel)
            actor: Auteur de l'action (controller ou opérateur)
            metadata: Métadonnées additionnelles

        Returns:
            Événement signé et haché

        Raises:
            AuditEmitterError: Erreur création/signature
        """
        if not request_id or not action or not actor:
            raise AuditEmitterError("request_id, action et actor sont obligatoires")
        if not isinstance(event_type, AuditEventType):
            raise AuditEmitterError(f"Type événement invalide: {event_type}")

        event = AuditEvent(
            event_id=str(uuid.uuid4()),
            event_type=event_type,
            timestamp=datetime.now(timezone.utc),
            request_id=request_id,
            listener_id=listener_id,
            actor=actor,
            action=action,
            metadata=json_safe(metadata or {}),
        )
        try:
            signed = replace(
                event,
                signature=self._sign(event),
                hash_value=self.compute_event_hash(event),
            )
        except Exception as e:
            raise AuditEmitterError(f"Erreur signature événement audit: {e}") from e

        self._events.append(signed)
        await self._dispatch(signed)
        return signed

    async def _dispatch(self, event: AuditEvent) -> None:
        """Diffuse l'événement aux sinks; un sink en échec est journalisé."""
        for sink in self._sinks:
            try:
                outcome = sink(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                if self._logger is None:
                    raise
                self._logger.warn(
                    f"Audit sink failed: {e}",
                    correlation_id=event.request_id,
                    event_id=event.event_id,
                )

    def verify_event_signature(self, event: AuditEvent) -> bool:
        """True si la signature correspond au contenu de l'événement."""
        signature = _decode_signature(event)
        if signature is None:
            return False
        return self.crypto_provider.verify_signature(_canonical(event), signature, self.KEY_ID)

    def public_key_pem(self) -> str:
        """Clé publique de signature, pour vérification hors contrôleur."""
        return self.crypto_provider.public_key_pem(self.KEY_ID)

    def verify_with_public_key(self, event: AuditEvent, public_pem: str) -> bool:
        """
        Vérifie un événement avec une clé publique exportée.

        Raises:
            KeyImportError: Clé publique invalide
        """
        signature = _decode_signature(event)
        if signature is None:
            return False
        return verify_with_public_key(public_pem, _canonical(event), signature)

    def compute_event_hash(self, event: AuditEvent) -> str:
        """SHA-384 hexadécimal de la forme canonique."""
        try:
            return hashlib.sha384(_canonical(event)).hexdigest()
        except (TypeError, ValueError) as e:
            raise AuditEmitterError(f"Erreur calcul hash: {e}") from e

    def get_events(
        self,
        request_id: Optional[str] = None,
        event_types: Optional[List[AuditEventType]] = None,
    ) -> List[AuditEvent]:
        """Historique local filtré, ordre chronologique."""
        events = list(self._events)
        if request_id is not None:
            events = [e for e in events if e.request_id == request_id]
        if event_types:
            events = [e for e in events if e.event_type in event_types]
        return events

    def _sign(self, event: AuditEvent) -> str:
        signature = self.crypto_provider.sign(_canonical(event), self.KEY_ID)
        return base64.b64encode(signature).decode("ascii")


def _canonical(event: AuditEvent) -> bytes:
    """Tous les champs sauf signature et hash_value, clés triées."""
    data = {
        "event_id": event.event_id,
        "event_type": event.event_type.value,
        "timestamp": event.timestamp.isoformat(),
        "request_id": event.request_id,
        "listener_id": event.listener_id,
        "actor": event.actor,
        "action": event.action,
        "metadata": event.metadata,
    }
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _decode_signature(event: AuditEvent) -> Optional[bytes]:
    if not event.signature:
        return None
    try:
        return base64.b64decode(event.signature, validate=True)
    except (ValueError, TypeError):
        return None

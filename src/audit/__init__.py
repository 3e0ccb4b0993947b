"""
LOT 2: Audit & Tracabilité

Flux d'événements signés du contrôleur de déploiement:
- Transitions d'état
- Changements de routage
- Actions opérateur, rollback et teardown
"""
from .interfaces import (
    IAuditEmitter,
    AuditEvent,
    AuditEventType,
    AuditSink,
)
from .audit_emitter import AuditEmitter, AuditEmitterError

__all__ = [
    # Interfaces
    "IAuditEmitter",
    # Data classes
    "AuditEvent",
    "AuditEventType",
    "AuditSink",
    # Implementations
    "AuditEmitter",
    # Exceptions
    "AuditEmitterError",
]

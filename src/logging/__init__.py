"""
LOT 2: Logging

Module de logging structuré avec:
- Format JSON structuré
- Champs obligatoires (timestamp, level, correlation_id, message)
- Timestamp ISO 8601 UTC
- Niveaux standard
"""

from .interfaces import (
    # Enums
    LogLevel,
    # Dataclasses
    LogEntry,
    LogConfig,
    # Interfaces
    IStructuredLogger,
)
from .structured_logger import (
    StructuredLogger,
    ContextualLogger,
    stderr_handler,
    # Exceptions
    MissingRequiredFieldError,
)

__all__ = [
    # Enums
    "LogLevel",
    # Dataclasses
    "LogEntry",
    "LogConfig",
    # Interfaces
    "IStructuredLogger",
    # Implementations
    "StructuredLogger",
    "ContextualLogger",
    "stderr_handler",
    # Exceptions
    "MissingRequiredFieldError",
]

"""
LOT 2: Logging - Structured Logger

Logger JSON structuré du contrôleur.

Invariants:
    Une entrée = une ligne JSON.
    Champs obligatoires: timestamp, level, correlation_id, message.
    Timestamp ISO 8601 UTC avec millisecondes et suffixe Z.
    correlation_id = request_id du déploiement dès qu'il est connu.
"""

import sys
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, List, Optional

from .interfaces import IStructuredLogger, LogConfig, LogEntry, LogLevel

OutputHandler = Callable[[str], None]


class MissingRequiredFieldError(Exception):
    """Champ obligatoire manquant."""

    def __init__(self, field_name: str) -> None:
        self.field_name = field_name
        super().__init__(f"Required field missing: {field_name}")


def stderr_handler(line: str) -> None:
    """Une ligne JSON par entrée sur stderr."""
    sys.stderr.write(line + "\n")
    sys.stderr.flush()


def utc_timestamp() -> str:
    """Horodatage courant, format 2024-12-04T14:30:00.123Z."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class _LevelMethods:
    """Raccourcis par niveau au-dessus de log()."""

    def log(self, level: LogLevel, message: str, **extra: Any) -> Optional[LogEntry]:
        raise NotImplementedError

    def debug(self, message: str, **extra: Any) -> Optional[LogEntry]:
        return self.log(LogLevel.DEBUG, message, **extra)

    def info(self, message: str, **extra: Any) -> Optional[LogEntry]:
        return self.log(LogLevel.INFO, message, **extra)

    def warn(self, message: str, **extra: Any) -> Optional[LogEntry]:
        return self.log(LogLevel.WARN, message, **extra)

    def error(self, message: str, **extra: Any) -> Optional[LogEntry]:
        return self.log(LogLevel.ERROR, message, **extra)

    def critical(self, message: str, **extra: Any) -> Optional[LogEntry]:
        return self.log(LogLevel.CRITICAL, message, **extra)


class StructuredLogger(_LevelMethods, IStructuredLogger):
    """
    Logger JSON structuré.

    Les entrées sont conservées (bornées par max_entries) pour les tests et
    le diagnostic; l'écriture effective est déléguée à output_handler.

    Example:
        logger = StructuredLogger("bascule", output_handler=stderr_handler)
        logger.with_context(correlation_id="req-42", listener_id="blue-80").info(
            "Traffic shifted", weight=10
        )
    """

    def __init__(
        self,
        name: str,
        config: Optional[LogConfig] = None,
        output_handler: Optional[OutputHandler] = None,
    ) -> None:
        """
        Args:
            name: Nom du composant (ex: "bascule.router")
            config: Configuration optionnelle
            output_handler: Sortie des lignes JSON (ex: stderr_handler)

        Raises:
            ValueError: Si name vide
        """
        if not name or not name.strip():
            raise ValueError("Logger name cannot be empty")

        self._name = name.strip()
        self._config = config or LogConfig()
        self._output_handler = output_handler
        self._entries: Deque[LogEntry] = deque(maxlen=self._config.max_entries)

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> LogConfig:
        return self._config

    def child(self, name: str) -> "StructuredLogger":
        """Logger de composant partageant config et sortie (nom parent.name)."""
        return StructuredLogger(
            f"{self._name}.{name}",
            config=self._config,
            output_handler=self._output_handler,
        )

    def with_context(
        self,
        correlation_id: Optional[str] = None,
        listener_id: Optional[str] = None,
    ) -> "ContextualLogger":
        """Logger dont correlation_id et listener_id sont fixés."""
        return ContextualLogger(self, correlation_id=correlation_id, listener_id=listener_id)

    def log(
        self,
        level: LogLevel,
        message: str,
        correlation_id: Optional[str] = None,
        listener_id: Optional[str] = None,
        **extra: Any,
    ) -> Optional[LogEntry]:
        """
        Crée et écrit une entrée.

        Sans correlation_id (ni défaut configuré), un UUID est généré pour
        que l'entrée reste corrélable.

        Raises:
            MissingRequiredFieldError: Si message vide
        """
        if LogLevel.get_priority(level) < LogLevel.get_priority(self._config.min_level):
            return None
        if not message:
            raise MissingRequiredFieldError("message")

        entry = LogEntry(
            timestamp=utc_timestamp(),
            level=level,
            correlation_id=correlation_id or self._config.default_correlation_id or str(uuid.uuid4()),
            message=message,
            listener_id=listener_id or self._config.default_listener_id,
            extra=dict(extra) if self._config.include_extra else {},
            logger_name=self._name,
        )
        self._entries.append(entry)

        if self._output_handler is not None:
            self._output_handler(entry.to_json())
        return entry

    def get_entries(self) -> List[LogEntry]:
        return list(self._entries)

    def get_entries_by_level(self, level: LogLevel) -> List[LogEntry]:
        return [e for e in self._entries if e.level == level]

    def get_entries_by_correlation(self, correlation_id: str) -> List[LogEntry]:
        """Entrées d'un déploiement (correlation_id = request_id)."""
        return [e for e in self._entries if e.correlation_id == correlation_id]


class ContextualLogger(_LevelMethods):
    """Logger au contexte fixé pour toute la durée d'un déploiement."""

    def __init__(
        self,
        logger: StructuredLogger,
        correlation_id: Optional[str] = None,
        listener_id: Optional[str] = None,
    ) -> None:
        self._logger = logger
        self._correlation_id = correlation_id
        self._listener_id = listener_id

    def log(self, level: LogLevel, message: str, **extra: Any) -> Optional[LogEntry]:
        return self._logger.log(
            level,
            message,
            correlation_id=self._correlation_id,
            listener_id=self._listener_id,
            **extra,
        )

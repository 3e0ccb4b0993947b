"""
LOT 2: Logging - Interfaces

Interfaces pour logging structuré.

Invariants:
    Format JSON structuré obligatoire.
    Champs obligatoires: timestamp, level, correlation_id, message.
    Timestamp format ISO 8601 avec timezone UTC.
    Niveaux: DEBUG, INFO, WARN, ERROR, CRITICAL.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class LogLevel(Enum):
    """
    Niveaux de log standard.

    Ordre de sévérité: DEBUG < INFO < WARN < ERROR < CRITICAL
    """

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @classmethod
    def get_priority(cls, level: "LogLevel") -> int:
        """Retourne la priorité du niveau (plus haut = plus sévère)."""
        priorities = {
            cls.DEBUG: 0,
            cls.INFO: 1,
            cls.WARN: 2,
            cls.ERROR: 3,
            cls.CRITICAL: 4,
        }
        return priorities.get(level, 0)

    @classmethod
    def from_name(cls, name: str) -> "LogLevel":
        """Résout un niveau depuis la configuration (insensible à la casse)."""
        normalized = name.strip().upper()
        if normalized == "WARNING":
            normalized = "WARN"
        return cls(normalized)


@dataclass
class LogEntry:
    """
    Structure log avec champs obligatoires.

    correlation_id = request_id du déploiement lorsque connu.
    """

    timestamp: str  # ISO 8601 UTC
    level: LogLevel
    correlation_id: str
    message: str
    listener_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    logger_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convertit en dictionnaire."""
        result: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "level": self.level.value,
            "correlation_id": self.correlation_id,
            "message": self.message,
        }
        if self.listener_id:
            result["listener_id"] = self.listener_id
        if self.logger_name:
            result["logger"] = self.logger_name
        if self.extra:
            result["extra"] = self.extra
        return result

    def to_json(self) -> str:
        """Convertit en JSON structuré."""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


@dataclass
class LogConfig:
    """Configuration du logger structuré."""

    min_level: LogLevel = LogLevel.INFO
    include_extra: bool = True
    max_entries: int = 10000
    default_correlation_id: Optional[str] = None
    default_listener_id: Optional[str] = None


class IStructuredLogger(ABC):
    """
    Interface logger structuré.

    Les raccourcis debug/info/warn/error/critical délèguent à log().
    """

    @abstractmethod
    def log(
        self,
        level: LogLevel,
        message: str,
        correlation_id: Optional[str] = None,
        listener_id: Optional[str] = None,
        **extra: Any,
    ) -> Optional[LogEntry]:
        """
        Écrit une entrée JSON.

        Returns:
            LogEntry créé ou None si filtré par niveau
        """
        pass

    @abstractmethod
    def get_entries(self) -> List[LogEntry]:
        """Entrées capturées, plus anciennes en premier."""
        pass

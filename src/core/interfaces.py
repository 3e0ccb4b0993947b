"""
BASCULE - LOT 1 Core Interfaces
Contrats à implémenter pour le module Core.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


# ══════════════════════════════════════════════════════════════════════════════
# TYPES
# ══════════════════════════════════════════════════════════════════════════════


class ValidationSeverity(Enum):
    BLOCKING = "blocking"
    WARNING = "warning"
    INFO = "info"


class ValidationError(BaseModel):
    """Erreur de validation d'une demande de déploiement."""

    rule_id: str
    message: str
    location: str
    value: Optional[str] = None
    severity: ValidationSeverity = ValidationSeverity.BLOCKING


class ValidationResult(BaseModel):
    """Résultat de validation d'une demande de déploiement."""

    valid: bool
    errors: list[ValidationError] = []
    warnings: list[ValidationError] = []
    checked_at: datetime

    def summary(self) -> str:
        """Résumé lisible des erreurs bloquantes."""
        return "; ".join(f"{e.location}: {e.message}" for e in self.errors)


class TimeoutType(Enum):
    """Points d'attente bloquants du contrôleur."""

    PROVISIONING = "provisioning"
    VALIDATION = "validation"
    APPROVAL = "approval"
    TEARDOWN = "teardown"
    ROUTING = "routing"
    DEPLOYMENT = "deployment"


@dataclass
class TimeoutConfig:
    """
    Timeouts (secondes) des attentes du contrôleur.

    Chaque attente bloquante a un timeout explicite, l'expiration
    est traitée comme un événement d'échec.
    """

    provisioning: float = 600.0
    validation: float = 300.0
    approval: float = 3600.0
    teardown: float = 300.0
    routing: float = 30.0
    deployment: float = 7200.0


# ══════════════════════════════════════════════════════════════════════════════
# INTERFACES
# ══════════════════════════════════════════════════════════════════════════════


class IConfigLoader(ABC):
    """Charge la configuration du contrôleur et les demandes de déploiement."""

    @abstractmethod
    async def load_settings(self, name: str) -> Any:
        """
        Charge la configuration du contrôleur.

        Raises:
            ConfigLoadError: Si fichier absent ou structure invalide
        """
        pass

    @abstractmethod
    async def load_request(self, name: str) -> Any:
        """
        Charge une demande de déploiement (document type appspec).

        Raises:
            ConfigLoadError: Si fichier absent ou structure invalide
        """
        pass


class IRequestValidator(ABC):
    """Valide une demande de déploiement avant acceptation."""

    @abstractmethod
    def validate(self, request: Any) -> ValidationResult:
        """
        Valide une demande contre TOUTES les règles.
        Retourne TOUTES les erreurs (pas fail-fast).
        """
        pass

    @abstractmethod
    def validate_rule(self, rule_id: str, request: Any) -> List[ValidationError]:
        """Valide UNE règle spécifique."""
        pass


class ICryptoProvider(ABC):
    """Opérations cryptographiques (signature des événements d'audit)."""

    @abstractmethod
    def sign(self, data: bytes, key_id: str) -> bytes:
        """Signe des données."""
        pass

    @abstractmethod
    def verify_signature(self, data: bytes, signature: bytes, key_id: str) -> bool:
        """Vérifie une signature."""
        pass


class ITimeoutManager(ABC):
    """Interface gestion des timeouts d'attente."""

    @abstractmethod
    def get_timeout(self, timeout_type: TimeoutType, listener_id: Optional[str] = None) -> float:
        """
        Retourne timeout configuré.

        Args:
            timeout_type: Type d'attente
            listener_id: Listener optionnel pour config spécifique

        Returns:
            Valeur du timeout en secondes
        """
        pass

    @abstractmethod
    def set_listener_timeout(self, listener_id: str, config: TimeoutConfig) -> None:
        """Configure des timeouts spécifiques à un listener."""
        pass

    @abstractmethod
    def as_dict(self, listener_id: Optional[str] = None) -> Dict[str, float]:
        """Retourne les timeouts effectifs sous forme de dict."""
        pass

"""
LOT 1: Core - Timeout Manager

Gestion centralisée des timeouts d'attente du contrôleur.

Invariants:
    Chaque attente bloquante (provisioning, verdict, gate, teardown) a un
    timeout explicite et borné.
    Les timeouts sont configurables par listener.
"""

from dataclasses import asdict
from typing import Dict, Optional

from .interfaces import ITimeoutManager, TimeoutConfig, TimeoutType


class InvalidTimeoutError(Exception):
    """Configuration timeout invalide."""

    pass


class TimeoutManager(ITimeoutManager):
    """
    Gestion centralisée des timeouts.

    Un TimeoutConfig par défaut, surchargeable listener par listener.
    """

    # Limites strictes
    MAX_TIMEOUTS: Dict[TimeoutType, float] = {
        TimeoutType.PROVISIONING: 3600.0,
        TimeoutType.VALIDATION: 3600.0,
        TimeoutType.APPROVAL: 86400.0,
        TimeoutType.TEARDOWN: 3600.0,
        TimeoutType.ROUTING: 300.0,
        TimeoutType.DEPLOYMENT: 172800.0,
    }

    def __init__(self, default_config: Optional[TimeoutConfig] = None) -> None:
        """
        Initialise le gestionnaire de timeouts.

        Args:
            default_config: Configuration par défaut (optionnel)
        """
        self._default = default_config or TimeoutConfig()
        self._listener_configs: Dict[str, TimeoutConfig] = {}

        self._validate_config(self._default)

    def _validate_config(self, config: TimeoutConfig) -> None:
        """
        Valide une configuration complète.

        Raises:
            InvalidTimeoutError: Si configuration invalide
        """
        for timeout_type in TimeoutType:
            value = getattr(config, timeout_type.value)
            if value <= 0:
                raise InvalidTimeoutError(f"{timeout_type.value} timeout must be positive")
            maximum = self.MAX_TIMEOUTS[timeout_type]
            if value > maximum:
                raise InvalidTimeoutError(
                    f"{timeout_type.value} timeout ({value}s) exceeds maximum ({maximum}s)"
                )

        # Une attente d'étape ne peut dépasser le budget global du déploiement
        for timeout_type in (TimeoutType.PROVISIONING, TimeoutType.VALIDATION):
            if getattr(config, timeout_type.value) > config.deployment:
                raise InvalidTimeoutError(
                    f"{timeout_type.value} timeout exceeds deployment timeout ({config.deployment}s)"
                )

    def get_timeout(self, timeout_type: TimeoutType, listener_id: Optional[str] = None) -> float:
        """
        Retourne timeout configuré (listener-specific ou default).

        Args:
            timeout_type: Type d'attente
            listener_id: Listener pour config spécifique (optionnel)

        Returns:
            Valeur du timeout en secondes
        """
        config = self._default
        if listener_id and listener_id in self._listener_configs:
            config = self._listener_configs[listener_id]

        if not isinstance(timeout_type, TimeoutType):
            raise ValueError(f"Unknown timeout type: {timeout_type}")
        return getattr(config, timeout_type.value)

    def set_listener_timeout(self, listener_id: str, config: TimeoutConfig) -> None:
        """
        Configure des timeouts spécifiques à un listener.

        Raises:
            InvalidTimeoutError: Si configuration invalide
            ValueError: Si listener_id vide
        """
        if not listener_id or not listener_id.strip():
            raise ValueError("listener_id cannot be empty")

        self._validate_config(config)
        self._listener_configs[listener_id] = config

    def as_dict(self, listener_id: Optional[str] = None) -> Dict[str, float]:
        """Timeouts effectifs pour un listener."""
        config = self._listener_configs.get(listener_id or "", self._default)
        return asdict(config)

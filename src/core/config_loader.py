"""
BASCULE - Config Loader Implementation
Charge la configuration du contrôleur et les demandes de déploiement YAML.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from ..deployment.interfaces import (
    ApprovalMode,
    DeploymentRequest,
    DeploymentStrategy,
    StrategyType,
)
from ..health.interfaces import HealthCheckSpec
from ..logging.interfaces import LogConfig, LogLevel
from ..logging.structured_logger import OutputHandler, StructuredLogger, stderr_handler
from ..network.interfaces import RetryConfig
from .crypto_provider import CryptoProvider
from .interfaces import IConfigLoader, TimeoutConfig
from .timeout_manager import TimeoutManager


class ConfigLoadError(Exception):
    """Fichier absent, YAML invalide ou structure non conforme."""

    pass


_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(value: Union[int, float, str]) -> float:
    """
    Convertit une durée en secondes.

    Formats: 600, 2.5, "90s", "10m", "1h", "250ms".

    Raises:
        ValueError: Format invalide
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


# ══════════════════════════════════════════════════════════════════════════════
# MODÈLES DE CONFIGURATION
# ══════════════════════════════════════════════════════════════════════════════


class TimeoutSettings(BaseModel):
    """Timeouts d'attente (secondes)."""

    provisioning: float = 600.0
    validation: float = 300.0
    approval: float = 3600.0
    teardown: float = 300.0
    routing: float = 30.0
    deployment: float = 7200.0

    @field_validator("*", mode="before")
    @classmethod
    def _durations(cls, value: Any) -> float:
        return parse_duration(value)

    def to_config(self) -> TimeoutConfig:
        return TimeoutConfig(**self.model_dump())


class RetrySettings(BaseModel):
    """Backoff des retries (teardown)."""

    max_attempts: int = Field(default=5, ge=1)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1)

    def to_config(self, retryable: tuple) -> RetryConfig:
        return RetryConfig(retryable_exceptions=retryable, **self.model_dump())


class HealthCheckSettings(BaseModel):
    """Health check par défaut (target group d'origine: "/", 60s, "200")."""

    path: str = "/"
    interval_seconds: float = 60.0
    timeout_seconds: float = 5.0
    healthy_threshold_count: int = Field(default=3, ge=1)
    unhealthy_threshold_count: int = Field(default=3, ge=1)
    expected_codes: str = "200"
    window_size: Optional[int] = None

    @field_validator("interval_seconds", "timeout_seconds", mode="before")
    @classmethod
    def _durations(cls, value: Any) -> float:
        return parse_duration(value)

    def to_spec(self) -> HealthCheckSpec:
        return HealthCheckSpec(**self.model_dump())


class ControllerSettings(BaseModel):
    """Configuration du contrôleur de déploiement."""

    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    listener_timeouts: Dict[str, TimeoutSettings] = Field(default_factory=dict)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    health_check: HealthCheckSettings = Field(default_factory=HealthCheckSettings)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    record_store_path: Optional[str] = None
    audit_key_path: Optional[str] = None
    audit_key_passphrase_env: str = "BASCULE_AUDIT_KEY_PASSPHRASE"
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        return LogLevel.from_name(value).value

    def log_config(self) -> LogConfig:
        """Configuration du logger structuré (niveau minimal)."""
        return LogConfig(min_level=LogLevel.from_name(self.log_level))

    def build_logger(self, name: str = "bascule", output_handler: Optional[OutputHandler] = None) -> StructuredLogger:
        """Logger racine du contrôleur (stderr par défaut)."""
        return StructuredLogger(name, self.log_config(), output_handler or stderr_handler)

    def build_timeout_manager(self) -> TimeoutManager:
        """TimeoutManager avec surcharges par listener."""
        manager = TimeoutManager(self.timeouts.to_config())
        for listener_id, overrides in self.listener_timeouts.items():
            manager.set_listener_timeout(listener_id, overrides.to_config())
        return manager

    def build_crypto_provider(self, key_id: str = "audit_key") -> CryptoProvider:
        """
        CryptoProvider dont la clé de signature survit aux redémarrages.

        Si audit_key_path existe, la clé y est relue; sinon elle est générée
        puis écrite (mode 0600). La passphrase est lue dans la variable
        d'environnement audit_key_passphrase_env si elle est définie.

        Raises:
            KeyImportError: Fichier de clé illisible ou passphrase erronée
        """
        provider = CryptoProvider()
        if not self.audit_key_path:
            return provider
        passphrase = os.environ.get(self.audit_key_passphrase_env)
        secret = passphrase.encode("utf-8") if passphrase else None
        path = Path(self.audit_key_path)
        if path.exists():
            provider.import_private_key(key_id, path.read_text(encoding="ascii"), secret)
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(provider.export_private_key(key_id, secret), encoding="ascii")
            path.chmod(0o600)
        return provider


class StrategyDocument(BaseModel):
    type: StrategyType = StrategyType.ALL_AT_ONCE
    steps: List[int] = Field(default_factory=list)


class RequestDocument(BaseModel):
    """Demande de déploiement (document type appspec)."""

    request_id: str
    listener_id: str
    target_image_ref: str
    soak_duration: float = 0.0
    termination_wait_duration: float = 600.0
    strategy: StrategyDocument = Field(default_factory=StrategyDocument)
    approval_mode: ApprovalMode = ApprovalMode.TIMER
    test_listener_id: Optional[str] = None
    health_check: Optional[HealthCheckSettings] = None

    @field_validator("soak_duration", "termination_wait_duration", mode="before")
    @classmethod
    def _durations(cls, value: Any) -> float:
        return parse_duration(value)

    def to_request(self) -> DeploymentRequest:
        return DeploymentRequest(
            request_id=self.request_id,
            listener_id=self.listener_id,
            target_image_ref=self.target_image_ref,
            soak_duration=self.soak_duration,
            termination_wait_duration=self.termination_wait_duration,
            strategy=DeploymentStrategy(self.strategy.type, tuple(self.strategy.steps)),
            approval_mode=self.approval_mode,
            test_listener_id=self.test_listener_id,
            health_check=self.health_check.to_spec() if self.health_check else None,
        )


# ══════════════════════════════════════════════════════════════════════════════
# LOADER
# ══════════════════════════════════════════════════════════════════════════════


class ConfigLoader(IConfigLoader):
    """Chargement des configurations depuis fichiers YAML."""

    def __init__(self, configs_path: str = "fixtures/configs"):
        self.configs_path = Path(configs_path)

    def _read_yaml(self, name: str) -> Dict[str, Any]:
        """
        Lit {configs_path}/{name}.yaml.

        Raises:
            ConfigLoadError: Fichier absent ou non mappable
        """
        config_file = self.configs_path / f"{name}.yaml"

        if not config_file.exists():
            raise ConfigLoadError(f"Configuration non trouvée: {config_file}")

        try:
            with open(config_file, "r", encoding="utf-8") as f:
                document = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigLoadError(f"Erreur de parsing YAML: {e}")
        except OSError as e:
            raise ConfigLoadError(f"Erreur de lecture fichier: {e}")

        if document is None:
            return {}
        if not isinstance(document, dict):
            raise ConfigLoadError("Configuration doit être un objet YAML")
        return document

    async def load_settings(self, name: str = "controller") -> ControllerSettings:
        """
        Charge la configuration du contrôleur.

        Raises:
            ConfigLoadError: Si fichier absent ou structure invalide
        """
        document = self._read_yaml(name)
        try:
            return ControllerSettings.model_validate(document.get("controller", document))
        except PydanticValidationError as e:
            raise ConfigLoadError(f"Configuration contrôleur invalide: {e}")

    async def load_request(self, name: str) -> DeploymentRequest:
        """
        Charge une demande de déploiement.

        Raises:
            ConfigLoadError: Si fichier absent, structure ou health check invalide
        """
        document = self._read_yaml(name)
        try:
            return RequestDocument.model_validate(document.get("deployment", document)).to_request()
        except (PydanticValidationError, ValueError) as e:
            raise ConfigLoadError(f"Demande de déploiement invalide: {e}")

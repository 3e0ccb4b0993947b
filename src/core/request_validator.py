"""
BASCULE - Request Validator Implementation
Valide une demande de déploiement avant acceptation.
"""

import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from .interfaces import (
    IRequestValidator,
    ITimeoutManager,
    TimeoutType,
    ValidationError,
    ValidationResult,
    ValidationSeverity,
)

if TYPE_CHECKING:
    from ..deployment.interfaces import DeploymentRequest

# registry[:port]/path[:tag][@sha256:digest]
IMAGE_REF_PATTERN = re.compile(
    r"^[a-z0-9]+(?:[._-][a-z0-9]+)*(?::\d+)?"
    r"(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*"
    r"(?::[\w][\w.-]{0,127})?"
    r"(?:@sha256:[a-f0-9]{64})?$"
)


class RequestValidator(IRequestValidator):
    """Validation des demandes de déploiement."""

    def __init__(self, timeout_manager: Optional[ITimeoutManager] = None):
        self._timeouts = timeout_manager
        self._validators: Dict[str, Callable[["DeploymentRequest"], List[ValidationError]]] = {
            "REQ_IDENTIFIERS": self._validate_identifiers,
            "REQ_IMAGE_REF": self._validate_image_ref,
            "REQ_DURATIONS": self._validate_durations,
            "REQ_CANARY_STEPS": self._validate_canary_steps,
            "REQ_TEST_LISTENER": self._validate_test_listener,
            "REQ_WAIT_BUDGET": self._validate_wait_budget,
            "REQ_HEALTH_CHECK": self._validate_health_check,
        }

    def validate(self, request: "DeploymentRequest") -> ValidationResult:
        """
        Valide une demande contre TOUTES les règles.
        Retourne TOUTES les erreurs (pas fail-fast).
        """
        errors: List[ValidationError] = []
        warnings: List[ValidationError] = []

        for rule_id in self._validators:
            for error in self.validate_rule(rule_id, request):
                if error.severity == ValidationSeverity.BLOCKING:
                    errors.append(error)
                elif error.severity == ValidationSeverity.WARNING:
                    warnings.append(error)

        return ValidationResult(
            valid=len(errors) == 0,
            errors=errors,
            warnings=warnings,
            checked_at=datetime.now(timezone.utc),
        )

    def validate_rule(self, rule_id: str, request: "DeploymentRequest") -> List[ValidationError]:
        """Valide UNE règle spécifique."""
        if rule_id not in self._validators:
            return [
                ValidationError(
                    rule_id=rule_id,
                    message=f"Règle inconnue: {rule_id}",
                    location="request",
                    severity=ValidationSeverity.BLOCKING,
                )
            ]

        return self._validators[rule_id](request)

    def _validate_identifiers(self, request: "DeploymentRequest") -> List[ValidationError]:
        errors = []
        for name in ("request_id", "listener_id"):
            if not getattr(request, name, "").strip():
                errors.append(
                    ValidationError(
                        rule_id="REQ_IDENTIFIERS",
                        message=f"{name} ne peut pas être vide",
                        location=name,
                    )
                )
        return errors

    def _validate_image_ref(self, request: "DeploymentRequest") -> List[ValidationError]:
        if IMAGE_REF_PATTERN.match(request.target_image_ref or ""):
            return []
        return [
            ValidationError(
                rule_id="REQ_IMAGE_REF",
                message="Référence d'image invalide",
                location="target_image_ref",
                value=request.target_image_ref,
            )
        ]

    def _validate_durations(self, request: "DeploymentRequest") -> List[ValidationError]:
        errors = []
        for name in ("soak_duration", "termination_wait_duration"):
            value = getattr(request, name)
            if value < 0:
                errors.append(
                    ValidationError(
                        rule_id="REQ_DURATIONS",
                        message=f"{name} doit être >= 0",
                        location=name,
                        value=str(value),
                    )
                )
        return errors

    def _validate_canary_steps(self, request: "DeploymentRequest") -> List[ValidationError]:
        """Paliers canary strictement croissants dans 1..99."""
        strategy = request.strategy
        if not strategy.is_canary:
            if strategy.steps:
                return [
                    ValidationError(
                        rule_id="REQ_CANARY_STEPS",
                        message="ALL_AT_ONCE n'accepte pas de paliers",
                        location="strategy.steps",
                        value=str(list(strategy.steps)),
                    )
                ]
            return []

        steps = list(strategy.steps)
        if not steps:
            return [
                ValidationError(
                    rule_id="REQ_CANARY_STEPS",
                    message="CANARY exige au moins un palier",
                    location="strategy.steps",
                )
            ]

        errors = []
        for index, step in enumerate(steps):
            if not 1 <= step <= 99:
                errors.append(
                    ValidationError(
                        rule_id="REQ_CANARY_STEPS",
                        message="Palier hors bornes 1..99",
                        location=f"strategy.steps[{index}]",
                        value=str(step),
                    )
                )
            if index > 0 and step <= steps[index - 1]:
                errors.append(
                    ValidationError(
                        rule_id="REQ_CANARY_STEPS",
                        message="Paliers non strictement croissants",
                        location=f"strategy.steps[{index}]",
                        value=str(step),
                    )
                )
        return errors

    def _validate_test_listener(self, request: "DeploymentRequest") -> List[ValidationError]:
        if request.test_listener_id is None:
            return []
        if request.test_listener_id == request.listener_id:
            return [
                ValidationError(
                    rule_id="REQ_TEST_LISTENER",
                    message="Le listener de test doit différer du listener principal",
                    location="test_listener_id",
                    value=request.test_listener_id,
                )
            ]
        if request.strategy.is_canary:
            return [
                ValidationError(
                    rule_id="REQ_TEST_LISTENER",
                    message="Le mode listener de test ignore les paliers canary",
                    location="strategy",
                    severity=ValidationSeverity.WARNING,
                )
            ]
        return []

    def _validate_wait_budget(self, request: "DeploymentRequest") -> List[ValidationError]:
        """Soak et attente de terminaison dans le budget global (WARNING)."""
        if self._timeouts is None:
            return []
        budget = self._timeouts.get_timeout(TimeoutType.DEPLOYMENT, request.listener_id)
        total = request.soak_duration + request.termination_wait_duration
        if total <= budget:
            return []
        return [
            ValidationError(
                rule_id="REQ_WAIT_BUDGET",
                message=f"Attentes cumulées ({total}s) au-delà du timeout de déploiement ({budget}s)",
                location="soak_duration",
                value=str(total),
                severity=ValidationSeverity.WARNING,
            )
        ]

    def _validate_health_check(self, request: "DeploymentRequest") -> List[ValidationError]:
        """
        Le seuil HEALTHY doit être atteignable avant le timeout de validation.

        timeout <= interval est garanti à la construction de HealthCheckSpec.
        """
        spec = request.health_check
        if spec is None or self._timeouts is None:
            return []
        budget = self._timeouts.get_timeout(TimeoutType.VALIDATION, request.listener_id)
        needed = (spec.healthy_threshold_count - 1) * spec.interval_seconds + spec.timeout_seconds
        if needed <= budget:
            return []
        return [
            ValidationError(
                rule_id="REQ_HEALTH_CHECK",
                message=f"Seuil HEALTHY inatteignable avant le timeout de validation ({budget}s)",
                location="health_check.interval_seconds",
                value=str(spec.interval_seconds),
            )
        ]

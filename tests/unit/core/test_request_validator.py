"""
Tests unitaires pour RequestValidator.

Règles REQ_*: identifiants, image, durées, paliers canary,
listener de test, budget d'attente et atteignabilité du health check.
"""

import pytest

from src.core.interfaces import TimeoutConfig, ValidationSeverity
from src.core.request_validator import RequestValidator
from src.core.timeout_manager import TimeoutManager
from src.deployment import DeploymentRequest, DeploymentStrategy
from src.health import HealthCheckSpec


def _request(**overrides) -> DeploymentRequest:
    params = dict(
        request_id="req-1",
        listener_id="blue-80",
        target_image_ref="registry.example.com:5000/shop/api:1.4.2",
        soak_duration=60.0,
        termination_wait_duration=600.0,
    )
    params.update(overrides)
    return DeploymentRequest(**params)


def _rule_ids(result) -> list:
    return [e.rule_id for e in result.errors]


class TestValidRequests:

    def test_minimal_request_is_valid(self) -> None:
        result = RequestValidator().validate(_request())

        assert result.valid is True
        assert result.errors == []

    def test_image_with_digest_is_valid(self) -> None:
        digest = "a" * 64
        result = RequestValidator().validate(_request(target_image_ref=f"shop/api@sha256:{digest}"))

        assert result.valid is True


class TestBlockingRules:
    """Erreurs bloquantes, toutes rapportées (pas fail-fast)."""

    def test_empty_identifiers(self) -> None:
        result = RequestValidator().validate(_request(request_id=" ", listener_id=""))

        assert result.valid is False
        assert _rule_ids(result).count("REQ_IDENTIFIERS") == 2

    @pytest.mark.parametrize("image", ["", "Shop/API:latest", "shop api:1", "shop/api:"])
    def test_invalid_image_ref(self, image: str) -> None:
        result = RequestValidator().validate(_request(target_image_ref=image))

        assert "REQ_IMAGE_REF" in _rule_ids(result)

    def test_negative_durations(self) -> None:
        result = RequestValidator().validate(_request(soak_duration=-1, termination_wait_duration=-5))

        assert _rule_ids(result).count("REQ_DURATIONS") == 2

    def test_all_errors_reported_together(self) -> None:
        result = RequestValidator().validate(
            _request(request_id="", target_image_ref="", soak_duration=-1)
        )

        assert {"REQ_IDENTIFIERS", "REQ_IMAGE_REF", "REQ_DURATIONS"} <= set(_rule_ids(result))


class TestCanarySteps:
    """Paliers strictement croissants dans 1..99."""

    def test_valid_steps(self) -> None:
        result = RequestValidator().validate(_request(strategy=DeploymentStrategy.canary(10, 50, 90)))

        assert result.valid is True

    def test_canary_requires_steps(self) -> None:
        result = RequestValidator().validate(_request(strategy=DeploymentStrategy.canary()))

        assert "REQ_CANARY_STEPS" in _rule_ids(result)

    @pytest.mark.parametrize("steps", [(0, 50), (50, 100), (50, 50), (60, 20)])
    def test_invalid_steps(self, steps) -> None:
        result = RequestValidator().validate(_request(strategy=DeploymentStrategy.canary(*steps)))

        assert "REQ_CANARY_STEPS" in _rule_ids(result)

    def test_all_at_once_rejects_steps(self) -> None:
        from src.deployment import StrategyType

        result = RequestValidator().validate(
            _request(strategy=DeploymentStrategy(StrategyType.ALL_AT_ONCE, (10,)))
        )

        assert "REQ_CANARY_STEPS" in _rule_ids(result)


class TestTestListener:

    def test_same_listener_is_blocking(self) -> None:
        result = RequestValidator().validate(_request(test_listener_id="blue-80"))

        assert "REQ_TEST_LISTENER" in _rule_ids(result)

    def test_canary_with_test_listener_is_warning(self) -> None:
        result = RequestValidator().validate(
            _request(test_listener_id="green-9000", strategy=DeploymentStrategy.canary(10))
        )

        assert result.valid is True
        assert [w.rule_id for w in result.warnings] == ["REQ_TEST_LISTENER"]
        assert result.warnings[0].severity is ValidationSeverity.WARNING


class TestTimeoutAwareRules:
    """Règles dépendant du TimeoutManager."""

    def test_waits_beyond_deployment_budget_warn(self) -> None:
        manager = TimeoutManager(TimeoutConfig(deployment=600.0, provisioning=60.0, validation=60.0))
        validator = RequestValidator(manager)

        result = validator.validate(_request(soak_duration=500.0, termination_wait_duration=200.0))

        assert result.valid is True
        assert "REQ_WAIT_BUDGET" in [w.rule_id for w in result.warnings]

    def test_unreachable_healthy_threshold_blocks(self) -> None:
        manager = TimeoutManager(TimeoutConfig(validation=100.0))
        spec = HealthCheckSpec(interval_seconds=60.0, timeout_seconds=5.0, healthy_threshold_count=3)

        result = RequestValidator(manager).validate(_request(health_check=spec))

        assert "REQ_HEALTH_CHECK" in _rule_ids(result)

    def test_reachable_threshold_passes(self) -> None:
        manager = TimeoutManager(TimeoutConfig(validation=300.0))
        spec = HealthCheckSpec(interval_seconds=60.0, timeout_seconds=5.0, healthy_threshold_count=3)

        result = RequestValidator(manager).validate(_request(health_check=spec))

        assert result.valid is True

    def test_listener_override_applies(self) -> None:
        manager = TimeoutManager()
        manager.set_listener_timeout("blue-80", TimeoutConfig(validation=30.0))
        spec = HealthCheckSpec(interval_seconds=20.0, timeout_seconds=5.0, healthy_threshold_count=3)

        result = RequestValidator(manager).validate(_request(health_check=spec))

        assert "REQ_HEALTH_CHECK" in _rule_ids(result)


def test_unknown_rule() -> None:
    errors = RequestValidator().validate_rule("REQ_UNKNOWN", _request())

    assert len(errors) == 1
    assert errors[0].severity is ValidationSeverity.BLOCKING

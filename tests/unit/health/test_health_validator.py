"""
Tests unitaires pour LOT 4: Health - HealthValidator

Invariants testés:
    Verdict à seuils sur séquences consécutives
    Timeout ou erreur de sonde = échec
    Une seule tâche de sonde par environnement
"""

import asyncio
from collections import deque
from datetime import datetime, timezone

import pytest

from src.deployment import Environment, EnvironmentRole
from src.health import (
    HealthCheckSpec,
    HealthValidator,
    IHealthValidator,
    VerdictStatus,
    compute_verdict,
)
from src.logging import LogConfig, LogLevel, StructuredLogger
from src.network import IEndpointProber, ProbeResponse, ProbeResult
from tests.fakes import FAST_HEALTH, FakeProber


def _result(success: bool) -> ProbeResult:
    return ProbeResult(url="http://env-green.internal/health", success=success)


def _candidate(environment_id: str = "env-green") -> Environment:
    return Environment(
        environment_id=environment_id,
        role=EnvironmentRole.CANDIDATE,
        replica_set_handle=f"rs-{environment_id}",
        endpoint=f"http://{environment_id}.internal",
    )


# ══════════════════════════════════════════════════════════════════════════════
# SPÉCIFICATION
# ══════════════════════════════════════════════════════════════════════════════


class TestHealthCheckSpec:

    def test_defaults_match_target_group(self) -> None:
        spec = HealthCheckSpec()

        assert spec.path == "/"
        assert spec.interval_seconds == 60.0
        assert spec.expected_codes == "200"
        assert spec.effective_window == 3

    @pytest.mark.parametrize(
        "params",
        [
            {"interval_seconds": 0},
            {"timeout_seconds": -1},
            {"interval_seconds": 5, "timeout_seconds": 10},
            {"healthy_threshold_count": 0},
            {"healthy_threshold_count": 5, "window_size": 3},
            {"expected_codes": "abc"},
        ],
    )
    def test_invalid_specs(self, params) -> None:
        with pytest.raises(ValueError):
            HealthCheckSpec(**params)

    def test_dict_roundtrip_keeps_codes(self) -> None:
        spec = HealthCheckSpec(path="/ready", expected_codes="200-299", window_size=10)

        restored = HealthCheckSpec.from_dict(spec.to_dict())

        assert restored == spec
        assert restored.predicate()(ProbeResponse(status_code=204)) is True

    def test_custom_predicate_wins(self) -> None:
        spec = HealthCheckSpec(expected=lambda response: "OK" in response.body)

        assert spec.predicate()(ProbeResponse(status_code=500, body="OK")) is True
        assert "expected" not in spec.to_dict()


# ══════════════════════════════════════════════════════════════════════════════
# VERDICT
# ══════════════════════════════════════════════════════════════════════════════


class TestComputeVerdict:

    def _verdict(self, outcomes, **spec_params):
        spec = HealthCheckSpec(**spec_params)
        window = deque((_result(o) for o in outcomes), maxlen=spec.effective_window)
        return compute_verdict("env-green", window, spec)

    def test_empty_window_is_inconclusive(self) -> None:
        verdict = self._verdict([])

        assert verdict.verdict is VerdictStatus.INCONCLUSIVE
        assert verdict.success_count == 0

    def test_healthy_threshold(self) -> None:
        verdict = self._verdict([True, True, True])

        assert verdict.verdict is VerdictStatus.HEALTHY
        assert verdict.consecutive_successes == 3

    def test_unhealthy_threshold(self) -> None:
        verdict = self._verdict([True, False, False, False], window_size=4)

        assert verdict.verdict is VerdictStatus.UNHEALTHY
        assert verdict.consecutive_failures == 3
        assert verdict.success_count == 1

    def test_consecutive_counted_from_latest(self) -> None:
        verdict = self._verdict([True, True, False, True], window_size=4)

        assert verdict.verdict is VerdictStatus.INCONCLUSIVE
        assert verdict.consecutive_successes == 1

    def test_terminal_flag(self) -> None:
        assert VerdictStatus.HEALTHY.is_terminal
        assert VerdictStatus.UNHEALTHY.is_terminal
        assert not VerdictStatus.INCONCLUSIVE.is_terminal


# ══════════════════════════════════════════════════════════════════════════════
# VALIDATEUR
# ══════════════════════════════════════════════════════════════════════════════


class SlowProber(IEndpointProber):
    """Ne répond jamais dans le délai."""

    async def probe(self, url, timeout, expected=None) -> ProbeResult:
        await asyncio.sleep(10)
        return ProbeResult(url=url, success=True)


class BrokenProber(IEndpointProber):
    async def probe(self, url, timeout, expected=None) -> ProbeResult:
        raise RuntimeError("socket exploded")


class TestHealthValidator:

    def test_implements_interface(self) -> None:
        assert isinstance(HealthValidator(FakeProber()), IHealthValidator)

    def test_build_url(self) -> None:
        assert HealthValidator.build_url("http://env.internal/", "/health") == "http://env.internal/health"
        assert HealthValidator.build_url("http://env.internal", "ready") == "http://env.internal/ready"

    @pytest.mark.asyncio
    async def test_healthy_candidate(self) -> None:
        prober = FakeProber()
        validator = HealthValidator(prober)
        try:
            await validator.evaluate(_candidate(), FAST_HEALTH)
            verdict = await validator.wait_for_verdict("env-green", timeout=1.0)
        finally:
            await validator.stop_all()

        assert verdict.verdict is VerdictStatus.HEALTHY
        assert prober.calls[0] == "http://env-green.internal/health"

    @pytest.mark.asyncio
    async def test_unhealthy_candidate(self) -> None:
        prober = FakeProber()
        prober.set_healthy("env-green", False)
        validator = HealthValidator(prober)
        try:
            await validator.evaluate(_candidate(), FAST_HEALTH)
            verdict = await validator.wait_for_verdict("env-green", timeout=1.0)
        finally:
            await validator.stop_all()

        assert verdict.verdict is VerdictStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_probe_timeout_counts_as_failure(self) -> None:
        validator = HealthValidator(SlowProber())
        try:
            await validator.evaluate(_candidate(), FAST_HEALTH)
            verdict = await validator.wait_for_verdict("env-green", timeout=2.0)
        finally:
            await validator.stop_all()

        assert verdict.verdict is VerdictStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_probe_exception_counts_as_failure(self) -> None:
        validator = HealthValidator(BrokenProber())
        try:
            await validator.evaluate(_candidate(), FAST_HEALTH)
            verdict = await validator.wait_for_verdict("env-green", timeout=1.0)
        finally:
            await validator.stop_all()

        assert verdict.verdict is VerdictStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_wait_returns_latest_on_timeout(self) -> None:
        spec = HealthCheckSpec(interval_seconds=5.0, timeout_seconds=1.0, healthy_threshold_count=3)
        validator = HealthValidator(FakeProber())
        try:
            await validator.evaluate(_candidate(), spec)
            verdict = await validator.wait_for_verdict("env-green", timeout=0.05)
        finally:
            await validator.stop_all()

        assert verdict.verdict is VerdictStatus.INCONCLUSIVE
        assert verdict.success_count == 1

    @pytest.mark.asyncio
    async def test_wait_unknown_environment(self) -> None:
        assert await HealthValidator(FakeProber()).wait_for_verdict("env-unknown", timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_evaluate_is_idempotent(self) -> None:
        validator = HealthValidator(FakeProber())
        try:
            await validator.evaluate(_candidate(), FAST_HEALTH)
            first = validator._monitors["env-green"].task
            await validator.evaluate(_candidate(), FAST_HEALTH)

            assert validator._monitors["env-green"].task is first
            assert validator.is_monitoring("env-green")
        finally:
            await validator.stop_all()

        assert not validator.is_monitoring("env-green")
        assert validator.latest_verdict("env-green") is None

    @pytest.mark.asyncio
    async def test_stop_recancels_loop_that_absorbed_cancellation(self) -> None:
        """Une annulation absorbée en fin de sonde ne bloque pas stop()."""
        validator = HealthValidator(FakeProber())
        await validator.evaluate(_candidate(), FAST_HEALTH)
        monitor = validator._monitors["env-green"]
        monitor.task.cancel()
        absorbed = asyncio.Event()

        async def absorbs_first_cancel() -> None:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                absorbed.set()
            await asyncio.Event().wait()

        monitor.task = asyncio.create_task(absorbs_first_cancel())
        await asyncio.sleep(0)

        await asyncio.wait_for(validator.stop("env-green"), timeout=1.0)

        assert absorbed.is_set()
        assert monitor.task.cancelled()
        assert not validator.is_monitoring("env-green")

    @pytest.mark.asyncio
    async def test_reset_then_degradation_detected(self) -> None:
        """Après reset, une dégradation sous trafic produit UNHEALTHY."""
        prober = FakeProber()
        logger = StructuredLogger("health", LogConfig(min_level=LogLevel.DEBUG))
        validator = HealthValidator(prober, logger)
        try:
            await validator.evaluate(_candidate(), FAST_HEALTH)
            assert (await validator.wait_for_verdict("env-green", 1.0)).verdict is VerdictStatus.HEALTHY

            validator.reset("env-green")
            assert validator.latest_verdict("env-green").verdict is VerdictStatus.INCONCLUSIVE

            prober.set_healthy("env-green", False)
            verdict = await validator.wait_for_verdict(
                "env-green", 1.0, frozenset({VerdictStatus.UNHEALTHY})
            )
        finally:
            await validator.stop_all()

        assert verdict.verdict is VerdictStatus.UNHEALTHY
        assert any("UNHEALTHY" in e.message for e in logger.get_entries_by_level(LogLevel.WARN))

    @pytest.mark.asyncio
    async def test_verdict_serializable(self) -> None:
        validator = HealthValidator(FakeProber())
        try:
            verdict = await validator.evaluate(_candidate(), FAST_HEALTH)
        finally:
            await validator.stop_all()

        data = verdict.to_dict()
        assert data["environment_id"] == "env-green"
        assert datetime.fromisoformat(data["window_end"]).tzinfo == timezone.utc

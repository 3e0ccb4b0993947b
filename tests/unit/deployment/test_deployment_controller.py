"""
Tests unitaires pour LOT 6: Deployment Controller

Surface opérateur: soumission, conflits, idempotence, lecture d'état.

Invariants testés:
    Une seule requête en vol par listener (ConflictError)
    Requête invalide rejetée avant toute écriture
    Resoumission identique idempotente
"""

import asyncio

import pytest

from src.audit import AuditEventType
from src.core.config_loader import ControllerSettings
from src.deployment import (
    ConflictError,
    DeploymentController,
    DeploymentEvent,
    DeploymentNotFoundError,
    DeploymentState,
    DeploymentStrategy,
    InvalidRequestError,
    InvalidTransitionError,
    JsonFileRecordStore,
)
from src.routing import InMemoryRoutingBackend
from tests.fakes import FakeProber, FakeProvisioner, make_request


# ══════════════════════════════════════════════════════════════════════════════
# SOUMISSION
# ══════════════════════════════════════════════════════════════════════════════


class TestSubmit:

    @pytest.mark.asyncio
    async def test_accepted_request_starts_provisioning(self, harness) -> None:
        record = await harness.controller.submit(make_request(soak_duration=3))

        assert record.state is DeploymentState.PROVISIONING
        assert record.history[0].event is DeploymentEvent.START_PROVISIONING
        stored = await harness.store.get("req-1")
        assert stored.state is not DeploymentState.PENDING
        submitted = harness.audit.get_events(event_types=[AuditEventType.DEPLOYMENT_SUBMITTED])
        assert submitted[0].metadata["target_image_ref"] == "registry.example.com/shop/api:1.1.0"

    @pytest.mark.asyncio
    async def test_invalid_request_rejected_before_write(self, harness) -> None:
        request = make_request(strategy=DeploymentStrategy.canary(50, 10))

        with pytest.raises(InvalidRequestError) as exc:
            await harness.controller.submit(request)

        assert exc.value.errors
        assert await harness.store.get("req-1") is None
        assert harness.audit.get_events() == []

    @pytest.mark.asyncio
    async def test_conflict_on_same_listener(self, harness) -> None:
        await harness.controller.submit(make_request("req-1", soak_duration=3))

        with pytest.raises(ConflictError) as exc:
            await harness.controller.submit(make_request("req-2"))

        assert "req-1" in str(exc.value)
        assert exc.value.request_id == "req-2"

    @pytest.mark.asyncio
    async def test_conflict_through_test_listener(self, harness) -> None:
        await harness.controller.submit(
            make_request("req-1", soak_duration=3, test_listener_id="green-9000")
        )

        with pytest.raises(ConflictError):
            await harness.controller.submit(make_request("req-2", listener_id="green-9000"))

    @pytest.mark.asyncio
    async def test_other_listener_not_blocked(self, harness) -> None:
        await harness.controller.submit(make_request("req-1", soak_duration=3))

        record = await harness.controller.submit(make_request("req-2", listener_id="red-81"))

        assert record.request_id == "req-2"

    @pytest.mark.asyncio
    async def test_identical_resubmission_is_idempotent(self, harness) -> None:
        request = make_request(soak_duration=3)
        await harness.controller.submit(request)

        again = await harness.controller.submit(request)

        assert again.request_id == "req-1"
        assert not again.state.is_terminal
        assert len(harness.audit.get_events(event_types=[AuditEventType.DEPLOYMENT_SUBMITTED])) == 1

    @pytest.mark.asyncio
    async def test_reused_request_id_with_other_content(self, harness) -> None:
        await harness.controller.submit(make_request(soak_duration=3))

        with pytest.raises(ConflictError):
            await harness.controller.submit(make_request(soak_duration=4))

    @pytest.mark.asyncio
    async def test_finished_deployment_frees_listener(self, harness) -> None:
        await harness.controller.submit(make_request("req-1"))
        await harness.controller.wait("req-1", timeout=3.0)

        record = await harness.controller.submit(make_request("req-2"))

        assert record.request_id == "req-2"
        assert (await harness.controller.wait("req-2", timeout=3.0)).state is DeploymentState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_successive_deployments_on_same_listener(self, harness) -> None:
        """Chaque déploiement terminé libère le listener pour le suivant."""
        for index in range(1, 6):
            request_id = f"req-{index}"
            await harness.controller.submit(make_request(request_id))

            record = await harness.controller.wait(request_id, timeout=3.0)

            assert record.state is DeploymentState.SUCCEEDED
        assert await harness.store.list_in_flight("blue-80") == []

    @pytest.mark.asyncio
    async def test_listener_freed_before_monitoring_stops(self, harness, monkeypatch) -> None:
        """Un arrêt de surveillance lent ne retient pas le listener."""
        stop_called = asyncio.Event()
        release = asyncio.Event()
        original_stop = harness.validator.stop

        async def slow_stop(environment_id: str) -> None:
            stop_called.set()
            await release.wait()
            await original_stop(environment_id)

        monkeypatch.setattr(harness.validator, "stop", slow_stop)
        await harness.controller.submit(make_request("req-1"))
        await asyncio.wait_for(stop_called.wait(), timeout=3.0)

        try:
            record = await harness.controller.submit(make_request("req-2", soak_duration=3))
        finally:
            release.set()

        assert record.request_id == "req-2"
        assert (await harness.controller.wait("req-1", timeout=1.0)).state is DeploymentState.SUCCEEDED


# ══════════════════════════════════════════════════════════════════════════════
# LECTURE ET COMMANDES
# ══════════════════════════════════════════════════════════════════════════════


class TestOperatorSurface:

    @pytest.mark.asyncio
    async def test_unknown_request(self, harness) -> None:
        with pytest.raises(DeploymentNotFoundError):
            await harness.controller.get_status("req-unknown")
        with pytest.raises(DeploymentNotFoundError):
            await harness.controller.abort("req-unknown")
        with pytest.raises(DeploymentNotFoundError):
            await harness.controller.resume("req-unknown")

    @pytest.mark.asyncio
    async def test_status_exposes_health_and_gate(self, harness) -> None:
        await harness.controller.submit(make_request(soak_duration=3))
        await harness.reach("req-1", DeploymentState.SOAKING, gate="soak")

        status = await harness.controller.get_status("req-1")

        assert status["open_gate"] == "soak"
        assert status["health"]["environment_id"] == "env-req-1"
        assert status["candidate_environment"]["role"] == "CANDIDATE"
        assert status["pre_shift_routing"] == {"blue-80": {"env-blue": 100}}
        assert status["timeouts"]["deployment"] == 5.0
        assert status["serving_environment"]["environment_id"] == "env-blue"

    @pytest.mark.asyncio
    async def test_status_after_promotion_shows_serving_environment(self, harness) -> None:
        await harness.controller.submit(make_request())
        await harness.controller.wait("req-1", timeout=3.0)

        status = await harness.controller.get_status("req-1")

        assert status["state"] == "SUCCEEDED"
        assert status["serving_environment"]["environment_id"] == "env-req-1"
        assert status["serving_environment"]["role"] == "ACTIVE"
        assert status["active_environment"]["role"] == "RETIRING"

    @pytest.mark.asyncio
    async def test_approve_without_open_gate(self, harness) -> None:
        await harness.controller.submit(make_request())
        await harness.controller.wait("req-1", timeout=3.0)

        assert await harness.controller.approve("req-1", "alice") is False
        actions = harness.audit.get_events(event_types=[AuditEventType.OPERATOR_ACTION])
        assert actions[-1].metadata["effective"] is False

    @pytest.mark.asyncio
    async def test_abort_of_finished_deployment_is_noop(self, harness) -> None:
        await harness.controller.submit(make_request())
        record = await harness.controller.wait("req-1", timeout=3.0)

        assert await harness.controller.abort("req-1") is False
        assert (await harness.controller.get_status("req-1"))["state"] == record.state.value

    @pytest.mark.asyncio
    async def test_invalid_external_event(self, harness) -> None:
        await harness.controller.submit(make_request(soak_duration=3))
        await harness.reach("req-1", DeploymentState.SOAKING)

        with pytest.raises(InvalidTransitionError):
            await harness.controller.apply_event("req-1", DeploymentEvent.OLD_TERMINATED)

    @pytest.mark.asyncio
    async def test_wait_timeout_does_not_cancel_driver(self, harness) -> None:
        await harness.controller.submit(make_request(soak_duration=0.3))

        with pytest.raises(asyncio.TimeoutError):
            await harness.controller.wait("req-1", timeout=0.01)

        assert (await harness.controller.wait("req-1", timeout=3.0)).state is DeploymentState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_list_deployments(self, harness) -> None:
        await harness.controller.submit(make_request("req-1"))
        await harness.controller.wait("req-1", timeout=3.0)
        await harness.controller.submit(make_request("req-2", listener_id="red-81"))

        summaries = {s["request_id"]: s for s in await harness.controller.list_deployments()}

        assert summaries["req-1"]["state"] == "SUCCEEDED"
        assert summaries["req-1"]["completed_at"] is not None
        assert summaries["req-2"]["listener_id"] == "red-81"

    @pytest.mark.asyncio
    async def test_returned_records_are_detached(self, harness) -> None:
        record = await harness.controller.submit(make_request(soak_duration=3))
        record.state = DeploymentState.FAILED

        assert (await harness.controller.get_status("req-1"))["state"] != "FAILED"


# ══════════════════════════════════════════════════════════════════════════════
# ASSEMBLAGE
# ══════════════════════════════════════════════════════════════════════════════


class TestFromSettings:

    @pytest.mark.asyncio
    async def test_built_from_settings(self, harness, tmp_path) -> None:
        settings = ControllerSettings(
            timeouts={"validation": "2s", "deployment": "30s", "provisioning": "2s"},
            poll_interval_seconds=0.01,
            record_store_path=str(tmp_path / "records"),
            retry={"max_attempts": 2, "initial_delay": 0, "max_delay": 0},
        )
        provisioner = FakeProvisioner()
        provisioner.add_environment(harness.provisioner.environments["env-blue"])
        controller = DeploymentController.from_settings(
            settings,
            provisioner=provisioner,
            routing_backend=InMemoryRoutingBackend(initial={"blue-80": {"env-blue": 100}}),
            prober=FakeProber(),
            audit_emitter=harness.audit,
            logger=harness.logger,
        )
        try:
            await controller.submit(make_request())
            record = await controller.wait("req-1", timeout=3.0)
            await controller.teardown_worker.drain(timeout=1.0)
        finally:
            await controller.close()

        assert record.state is DeploymentState.SUCCEEDED
        assert provisioner.torn_down == ["env-blue"]
        persisted = await JsonFileRecordStore(tmp_path / "records").get("req-1")
        assert persisted.state is DeploymentState.SUCCEEDED

"""
Tests unitaires pour LOT 2: Logging - StructuredLogger

Invariants testés:
    Format JSON structuré
    Champs obligatoires: timestamp, level, correlation_id, message
    Timestamp ISO 8601 UTC avec millisecondes
"""

import json
import re

import pytest

from src.logging import (
    ContextualLogger,
    IStructuredLogger,
    LogConfig,
    LogEntry,
    LogLevel,
    MissingRequiredFieldError,
    StructuredLogger,
)


TIMESTAMP_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")


class TestStructuredFormat:
    """Format JSON et champs obligatoires."""

    def test_implements_interface(self) -> None:
        assert isinstance(StructuredLogger("bascule"), IStructuredLogger)

    def test_empty_name_rejected(self) -> None:
        with pytest.raises(ValueError):
            StructuredLogger("  ")

    def test_json_output_contains_required_fields(self) -> None:
        lines = []
        logger = StructuredLogger("bascule", output_handler=lines.append)

        logger.info("Deployment submitted", correlation_id="req-1", listener_id="blue-80", state="PENDING")

        payload = json.loads(lines[0])
        assert payload["level"] == "INFO"
        assert payload["correlation_id"] == "req-1"
        assert payload["listener_id"] == "blue-80"
        assert payload["message"] == "Deployment submitted"
        assert payload["logger"] == "bascule"
        assert payload["extra"] == {"state": "PENDING"}
        assert TIMESTAMP_PATTERN.match(payload["timestamp"])

    def test_correlation_id_generated_when_absent(self) -> None:
        logger = StructuredLogger("bascule")

        entry = logger.info("no context")

        assert len(entry.correlation_id) == 36

    def test_default_context_from_config(self) -> None:
        config = LogConfig(default_correlation_id="boot", default_listener_id="blue-80")
        entry = StructuredLogger("bascule", config).info("started")

        assert entry.correlation_id == "boot"
        assert entry.listener_id == "blue-80"

    def test_empty_message_rejected(self) -> None:
        with pytest.raises(MissingRequiredFieldError) as exc:
            StructuredLogger("bascule").info("")
        assert exc.value.field_name == "message"

    def test_extra_dropped_when_disabled(self) -> None:
        entry = StructuredLogger("bascule", LogConfig(include_extra=False)).info("msg", weight=10)

        assert entry.extra == {}
        assert "extra" not in entry.to_dict()

    def test_non_serializable_extra_rendered_as_string(self) -> None:
        entry = StructuredLogger("bascule").info("msg", level_obj=LogLevel.WARN)

        assert "LogLevel.WARN" in entry.to_json()


class TestLevels:
    """Filtrage par niveau minimal."""

    def test_below_min_level_not_logged(self) -> None:
        logger = StructuredLogger("bascule", LogConfig(min_level=LogLevel.WARN))

        assert logger.info("ignored") is None
        assert logger.warn("kept") is not None
        assert len(logger.get_entries()) == 1

    def test_all_level_helpers(self) -> None:
        logger = StructuredLogger("bascule", LogConfig(min_level=LogLevel.DEBUG))
        logger.debug("d")
        logger.info("i")
        logger.warn("w")
        logger.error("e")
        logger.critical("c")

        assert [e.level for e in logger.get_entries()] == list(LogLevel)

    @pytest.mark.parametrize("name,expected", [("info", LogLevel.INFO), ("WARNING", LogLevel.WARN), (" error ", LogLevel.ERROR)])
    def test_from_name(self, name: str, expected: LogLevel) -> None:
        assert LogLevel.from_name(name) is expected

    def test_from_name_unknown(self) -> None:
        with pytest.raises(ValueError):
            LogLevel.from_name("TRACE")


class TestCapture:
    """Entrées capturées en mémoire."""

    def test_entries_bounded(self) -> None:
        logger = StructuredLogger("bascule", LogConfig(max_entries=2))
        for i in range(5):
            logger.info(f"m{i}")

        assert [e.message for e in logger.get_entries()] == ["m3", "m4"]

    def test_filters(self) -> None:
        logger = StructuredLogger("bascule")
        logger.info("a", correlation_id="req-1")
        logger.warn("b", correlation_id="req-2")

        assert [e.message for e in logger.get_entries_by_correlation("req-1")] == ["a"]
        assert [e.message for e in logger.get_entries_by_level(LogLevel.WARN)] == ["b"]

    def test_child_shares_config_and_output(self) -> None:
        lines = []
        parent = StructuredLogger("bascule", LogConfig(min_level=LogLevel.WARN), lines.append)

        child = parent.child("router")
        child.info("ignored")
        child.warn("kept")

        assert child.name == "bascule.router"
        assert len(lines) == 1
        assert json.loads(lines[0])["logger"] == "bascule.router"


class TestContextualLogger:
    """Contexte fixé pour un déploiement."""

    def test_context_applied(self) -> None:
        logger = StructuredLogger("bascule", LogConfig(min_level=LogLevel.DEBUG))
        log = logger.with_context(correlation_id="req-7", listener_id="blue-80")

        assert isinstance(log, ContextualLogger)
        for method in (log.debug, log.info, log.warn, log.error, log.critical):
            method("event", step=1)

        entries = logger.get_entries_by_correlation("req-7")
        assert len(entries) == 5
        assert all(e.listener_id == "blue-80" for e in entries)
        assert entries[-1].level is LogLevel.CRITICAL


def test_log_entry_to_dict_minimal() -> None:
    entry = LogEntry(timestamp="t", level=LogLevel.INFO, correlation_id="c", message="m")

    assert entry.to_dict() == {"timestamp": "t", "level": "INFO", "correlation_id": "c", "message": "m"}

"""Tests for custodian.core.logging module."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from custodian.core.config import CoreSettings
from custodian.core.logging import (
    REDACTED,
    JSONFormatter,
    StandardFormatter,
    configure_logging,
    correlation_context,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    sanitize,
    set_correlation_id,
)


@pytest.fixture
def restore_root_logger():
    """Put the root logger back the way the test runner configured it."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _record(msg: str = "hello", level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord("custodian.test", level, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ============================================================================
# Correlation ID Tests
# ============================================================================


class TestCorrelationId:
    """Tests for correlation ID functionality."""

    def test_default_none(self):
        set_correlation_id(None)
        assert get_correlation_id() is None

    def test_generate_unique(self):
        id1 = generate_correlation_id()
        id2 = generate_correlation_id()

        assert id1 != id2
        assert len(id1) == 36

    def test_context_generates_and_restores(self):
        set_correlation_id(None)

        with correlation_context() as cid:
            assert get_correlation_id() == cid

        assert get_correlation_id() is None

    def test_context_uses_given_id(self):
        with correlation_context("tick-42") as cid:
            assert cid == "tick-42"
            assert get_correlation_id() == "tick-42"

    def test_nested_contexts(self):
        with correlation_context("outer"):
            with correlation_context("inner"):
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"


# ============================================================================
# Sanitization Tests
# ============================================================================


class TestSanitize:
    """Sensitive keys are redacted by case-insensitive substring match."""

    def test_redacts_sensitive_keys(self):
        data = {"confirmation_token": "abc", "Password": "x", "user_id": "u1"}

        assert sanitize(data) == {"confirmation_token": REDACTED, "Password": REDACTED, "user_id": "u1"}

    def test_recurses_into_nested_structures(self):
        data = {"outer": {"api_key": "k"}, "items": [{"secret": "s", "ok": 1}]}

        assert sanitize(data) == {"outer": {"api_key": REDACTED}, "items": [{"secret": REDACTED, "ok": 1}]}

    def test_truncates_long_strings(self):
        result = sanitize({"note": "x" * 600})

        assert len(result["note"]) == 503
        assert result["note"].endswith("...")

    def test_leaves_input_untouched(self):
        data = {"token": "abc"}
        sanitize(data)
        assert data == {"token": "abc"}

    def test_custom_keys(self):
        assert sanitize({"document_number": "1"}, frozenset({"document"})) == {"document_number": REDACTED}


# ============================================================================
# Formatter Tests
# ============================================================================


class TestJSONFormatter:
    def test_basic_fields(self):
        set_correlation_id(None)
        output = json.loads(JSONFormatter().format(_record()))

        assert output["level"] == "INFO"
        assert output["logger"] == "custodian.test"
        assert output["message"] == "hello"
        assert "correlation_id" not in output
        assert "source" not in output

    def test_includes_correlation_id(self):
        with correlation_context("cid-1"):
            output = json.loads(JSONFormatter().format(_record()))

        assert output["correlation_id"] == "cid-1"

    def test_warning_includes_source(self):
        output = json.loads(JSONFormatter().format(_record(level=logging.WARNING)))

        assert output["source"]["line"] == 10

    def test_extra_data_is_sanitized(self):
        record = _record(extra_data={"token": "abc", "kind": "export_ready"})
        output = json.loads(JSONFormatter().format(record))

        assert output["extra"] == {"token": REDACTED, "kind": "export_ready"}


class TestStandardFormatter:
    def test_prefixes_short_correlation_id(self):
        formatter = StandardFormatter(use_colors=False)

        with correlation_context("abcdef0123456789"):
            line = formatter.format(_record())

        assert "[abcdef01] hello" in line

    def test_does_not_mutate_record(self):
        formatter = StandardFormatter(use_colors=False)
        record = _record()

        with correlation_context("abcdef0123456789"):
            formatter.format(record)

        assert record.msg == "hello"


# ============================================================================
# configure_logging Tests
# ============================================================================


class TestConfigureLogging:
    def test_json_format_from_settings(self, restore_root_logger):
        configure_logging(settings=CoreSettings(log_level="DEBUG", log_format="json"))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_explicit_level_wins(self, restore_root_logger):
        configure_logging(level="ERROR", settings=CoreSettings(log_level="DEBUG", log_format="text"))

        root = logging.getLogger()
        assert root.level == logging.ERROR
        assert isinstance(root.handlers[0].formatter, StandardFormatter)

    def test_log_file_uses_json(self, restore_root_logger, tmp_path):
        log_file = tmp_path / "custodian.log"
        configure_logging(settings=CoreSettings(log_format="text", log_file=str(log_file)))

        root = logging.getLogger()
        file_handlers = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1
        assert isinstance(file_handlers[0].formatter, JSONFormatter)
        file_handlers[0].close()

    def test_handlers_replaced_on_reconfigure(self, restore_root_logger):
        settings = CoreSettings(log_format="json")
        configure_logging(settings=settings)
        configure_logging(settings=settings)

        stream_handlers = [h for h in logging.getLogger().handlers if getattr(h, "stream", None) is sys.stderr]
        assert len(stream_handlers) == 1

    def test_get_logger(self):
        assert get_logger("custodian.x").name == "custodian.x"

"""
Tests for structured logging configuration.
"""

import json
import logging

import structlog

from apps.core.logging import (
    _add_trace_id,
    bind_contextvars,
    clear_contextvars,
    configure_logging,
    get_contextvars,
    get_logger,
)


class TestConfigureLogging:
    def test_json_format_installs_root_handler(self):
        configure_logging(json_format=True, log_level="INFO")

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.INFO
        assert structlog.is_configured()

    def test_unknown_level_falls_back_to_info(self):
        configure_logging(json_format=False, log_level="CHATTY")

        assert logging.getLogger().level == logging.INFO


class TestContextVars:
    """Context bound for a request is visible to the audit writer."""

    def setup_method(self):
        clear_contextvars()

    def teardown_method(self):
        clear_contextvars()

    def test_bound_values_are_readable(self):
        bind_contextvars(correlation_id="abc123", **{"organization.id": "42"})

        ctx = get_contextvars()
        assert ctx["correlation_id"] == "abc123"
        assert ctx["organization.id"] == "42"

    def test_clear_removes_context(self):
        bind_contextvars(correlation_id="abc123")
        clear_contextvars()

        assert get_contextvars() == {}


class TestTraceIdProcessor:
    def test_correlation_id_renamed(self):
        event = _add_trace_id(logging.getLogger(), "info", {"event": "x", "correlation_id": 123})

        assert event == {"event": "x", "trace_id": "123"}

    def test_event_without_correlation_id_untouched(self):
        assert _add_trace_id(logging.getLogger(), "info", {"event": "x"}) == {"event": "x"}


class TestLogOutput:
    """configure_logging binds its handler to the sys.stdout current at call time."""

    def setup_method(self):
        clear_contextvars()

    def teardown_method(self):
        clear_contextvars()

    def test_json_line_carries_context(self, capsys):
        configure_logging(json_format=True, log_level="DEBUG")
        bind_contextvars(correlation_id="job-1")

        get_logger("tests.billing").info("subscription_swept", organization_id="42")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "subscription_swept"
        assert record["organization_id"] == "42"
        assert record["trace_id"] == "job-1"
        assert record["level"] == "info"

    def test_exception_is_rendered(self, capsys):
        configure_logging(json_format=True, log_level="DEBUG")
        logger = get_logger("tests.billing")
        try:
            raise ValueError("boom")
        except ValueError:
            logger.exception("sweep_failed")

        output = capsys.readouterr().out
        assert "sweep_failed" in output
        assert "ValueError" in output

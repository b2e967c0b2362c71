"""
Unit Tests for Logging Module

Tests logger configuration, thread context, redaction and logging utilities.
"""

from unittest.mock import MagicMock

import pytest

from src.core.logging.logger import (
    add_thread_id,
    clear_thread_id,
    get_logger,
    get_thread_id,
    log_stage,
    redact_secrets,
    set_thread_id,
    setup_logging,
)


@pytest.mark.unit
class TestLoggerCreation:
    def test_get_logger_returns_logger_instance(self):
        logger = get_logger(__name__)
        assert hasattr(logger, "info")

    def test_setup_logging_accepts_both_formats(self):
        setup_logging(log_level="DEBUG", log_format="console")
        setup_logging(log_level="INFO", log_format="json")


@pytest.mark.unit
class TestThreadContext:
    def test_thread_id_round_trip(self):
        set_thread_id("thread-123")
        assert get_thread_id() == "thread-123"

        clear_thread_id()
        assert get_thread_id() is None

    def test_add_thread_id_injects_context(self):
        set_thread_id("thread-abc")
        try:
            event = add_thread_id(None, "info", {"event": "hello"})
        finally:
            clear_thread_id()

        assert event["thread_id"] == "thread-abc"

    def test_add_thread_id_keeps_explicit_value(self):
        set_thread_id("thread-abc")
        try:
            event = add_thread_id(None, "info", {"event": "hello", "thread_id": "explicit"})
        finally:
            clear_thread_id()

        assert event["thread_id"] == "explicit"


@pytest.mark.unit
class TestRedaction:
    @pytest.mark.parametrize(
        "message, leaked",
        [
            ("calling with Bearer pat_abcdef123456", "pat_abcdef123456"),
            ("token sat_XYZ987 rejected", "sat_XYZ987"),
            ("contact alice@example.com", "alice@example.com"),
            ("phone 138-1234-5678", "138-1234-5678"),
        ],
    )
    def test_secrets_are_redacted(self, message, leaked):
        event = redact_secrets(None, "info", {"event": message})
        assert leaked not in event["event"]

    def test_non_string_events_are_untouched(self):
        event = redact_secrets(None, "info", {"event": {"nested": True}})
        assert event["event"] == {"nested": True}


@pytest.mark.unit
class TestLogStage:
    def test_log_stage_uses_requested_level(self):
        logger = MagicMock()

        log_stage(logger, "A.2", "Operation queued", level="warning", queue_length=3)

        logger.warning.assert_called_once_with("Operation queued", stage="A.2", queue_length=3)

    def test_log_stage_defaults_to_info(self):
        logger = MagicMock()

        log_stage(logger, "2.2", "Conversation handle cached")

        logger.info.assert_called_once_with("Conversation handle cached", stage="2.2")

"""
Unit Tests for Structured Logging

Tests the custom processors and task ID context handling.
"""

import pytest

from broadcast_reliability.core.logging.logger import (
    add_log_level_name,
    add_task_id,
    add_timestamp,
    clear_task_id,
    get_logger,
    get_task_id,
    log_stage,
    redact_pii,
    set_task_id,
    setup_logging,
)


@pytest.fixture(autouse=True)
def _reset_task_id():
    clear_task_id()
    yield
    clear_task_id()


@pytest.mark.unit
class TestProcessors:
    def test_add_task_id_from_context(self):
        set_task_id("task-123")

        event = add_task_id(None, "info", {"event": "hello"})

        assert event["task_id"] == "task-123"

    def test_add_task_id_keeps_explicit_value(self):
        set_task_id("task-123")

        event = add_task_id(None, "info", {"event": "hello", "task_id": "other"})

        assert event["task_id"] == "other"

    def test_add_task_id_without_context(self):
        assert "task_id" not in add_task_id(None, "info", {"event": "hello"})

    def test_add_timestamp_is_utc_iso(self):
        event = add_timestamp(None, "info", {})

        assert event["timestamp"].endswith("Z")

    @pytest.mark.parametrize(
        "message, expected",
        [
            ("mail ops@example.com now", "mail [EMAIL] now"),
            ("key sk-abc123XYZ leaked", "key [REDACTED] leaked"),
            ("call 555-123-4567", "call [PHONE]"),
        ],
    )
    def test_redact_pii(self, message, expected):
        assert redact_pii(None, "info", {"event": message})["event"] == expected

    def test_redact_pii_ignores_non_strings(self):
        assert redact_pii(None, "info", {"event": 42})["event"] == 42

    def test_level_name_uppercased(self):
        assert add_log_level_name(None, "info", {"level": "warning"})["level"] == "WARNING"


@pytest.mark.unit
class TestTaskContext:
    def test_set_and_clear(self):
        set_task_id("abc")
        assert get_task_id() == "abc"

        clear_task_id()
        assert get_task_id() is None


@pytest.mark.unit
class TestLoggerHelpers:
    def test_setup_and_log_stage(self):
        setup_logging(log_level="DEBUG", log_format="console")
        logger = get_logger("tests.logging")

        log_stage(logger, "4.0_RECOVERY", "sweep finished", level="debug", attempted=3)

    def test_log_stage_calls_level_method(self):
        from unittest.mock import MagicMock

        logger = MagicMock()

        log_stage(logger, "3.0_DEAD_LETTER", "stored", level="WARNING", record_id=1)

        logger.warning.assert_called_once_with("stored", stage="3.0_DEAD_LETTER", record_id=1)

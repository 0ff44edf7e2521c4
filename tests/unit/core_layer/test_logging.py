"""
Unit Tests for Structured Logging

Tests the structlog processors (correlation id, redaction, level names) and
the correlation id context helpers.
"""

from unittest.mock import MagicMock

import pytest

from engagement_backbone.core.logging.logger import (
    add_correlation_id,
    add_log_level_name,
    clear_correlation_id,
    get_correlation_id,
    get_logger,
    log_stage,
    redact_pii,
    set_correlation_id,
    setup_logging,
)


@pytest.fixture(autouse=True)
def _clean_correlation_id():
    clear_correlation_id()
    yield
    clear_correlation_id()


@pytest.mark.unit
class TestCorrelationId:
    def test_set_and_get(self):
        set_correlation_id("req-123")
        assert get_correlation_id() == "req-123"

    def test_processor_injects_id(self):
        set_correlation_id("import-user-42")
        event = add_correlation_id(None, "info", {"event": "Job completed"})
        assert event["correlation_id"] == "import-user-42"

    def test_processor_skips_when_unset(self):
        event = add_correlation_id(None, "info", {"event": "Job completed"})
        assert "correlation_id" not in event


@pytest.mark.unit
class TestRedaction:
    def test_email_redacted(self):
        event = redact_pii(None, "info", {"event": "Importing jane.doe+test@example.com"})
        assert event["event"] == "Importing [EMAIL]"

    def test_bearer_token_redacted(self):
        event = redact_pii(None, "info", {"event": "Header Bearer abc.def-123"})
        assert "abc.def-123" not in event["event"]
        assert "Bearer [REDACTED]" in event["event"]

    def test_catalog_token_redacted(self):
        event = redact_pii(None, "info", {"event": "token shpat_0123abcd leaked"})
        assert event["event"] == "token [REDACTED] leaked"

    def test_non_string_events_untouched(self):
        event = redact_pii(None, "info", {"event": {"nested": True}})
        assert event["event"] == {"nested": True}


@pytest.mark.unit
class TestLoggerHelpers:
    def test_level_name_upper_cased(self):
        assert add_log_level_name(None, "warning", {"level": "warning"})["level"] == "WARNING"

    def test_log_stage_dispatches_level(self):
        logger = MagicMock()
        log_stage(logger, "QUEUE.ENQUEUE_BULK", "Chunk enqueued", level="warning", chunk=3)
        logger.warning.assert_called_once_with("Chunk enqueued", stage="QUEUE.ENQUEUE_BULK", chunk=3)

    def test_setup_logging_configures_structlog(self):
        setup_logging(log_level="DEBUG", log_format="json")
        logger = get_logger("tests.logging")
        logger.info("Configured", stage="TEST")

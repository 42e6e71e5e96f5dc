"""Tests for structured logging module."""

import structlog

from wayfare.core.logging import (
    SERVICE_NAME,
    LoggerMixin,
    add_correlation_id,
    add_service_context,
    bind_contextvars,
    clear_contextvars,
    clear_correlation_id,
    configure_logging,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    unbind_contextvars,
)


class TestCorrelationId:
    """Tests for correlation ID management."""

    def setup_method(self) -> None:
        """Clear correlation ID before each test."""
        clear_correlation_id()

    def test_set_and_get_correlation_id(self) -> None:
        """Test setting and getting correlation ID."""
        assert get_correlation_id() is None

        correlation_id = set_correlation_id("evt_123")
        assert correlation_id == "evt_123"
        assert get_correlation_id() == "evt_123"

    def test_auto_generate_correlation_id(self) -> None:
        """Test auto-generation of correlation ID."""
        correlation_id = set_correlation_id()
        assert len(correlation_id) == 36  # UUID format

    def test_clear_correlation_id(self) -> None:
        """Test clearing correlation ID."""
        set_correlation_id("test-id")
        clear_correlation_id()
        assert get_correlation_id() is None


class TestProcessors:
    """Tests for the custom structlog processors."""

    def setup_method(self) -> None:
        clear_correlation_id()

    def test_correlation_id_added(self) -> None:
        """Test the correlation id is copied into log events."""
        set_correlation_id("evt_1")
        event = add_correlation_id(None, "info", {"event": "webhook_event_received"})
        assert event["correlation_id"] == "evt_1"
        clear_correlation_id()

    def test_correlation_id_omitted_when_unset(self) -> None:
        """Test no correlation id key is added without one."""
        event = add_correlation_id(None, "info", {"event": "subscription_created"})
        assert "correlation_id" not in event

    def test_service_context(self) -> None:
        """Test the service name is added to every event."""
        event = add_service_context(None, "info", {"event": "x"})
        assert event["service"] == SERVICE_NAME


class TestStructuredLogging:
    """Tests for structured logging configuration."""

    def setup_method(self) -> None:
        """Clear context before each test."""
        clear_contextvars()

    def test_configure_logging_json_mode(self) -> None:
        """Test JSON logging configuration."""
        configure_logging(json_logs=True, log_level="INFO")
        assert get_logger("test_json") is not None

    def test_configure_logging_console_mode(self) -> None:
        """Test console logging configuration."""
        configure_logging(json_logs=False, log_level="DEBUG")
        assert get_logger("test_console") is not None

    def test_log_level_filtering(self) -> None:
        """Test that logging below the level does not raise."""
        configure_logging(json_logs=False, log_level="WARNING")

        logger = get_logger("level_test")
        logger.debug("debug_message")
        logger.info("info_message")
        logger.warning("warning_message")


class TestContextVars:
    """Tests for context variable binding."""

    def setup_method(self) -> None:
        """Clear context before each test."""
        clear_contextvars()

    def test_bind_and_unbind(self) -> None:
        """Test binding and unbinding context variables."""
        bind_contextvars(subscriber_id="user-1", request_id="abc")
        assert structlog.contextvars.get_contextvars() == {
            "subscriber_id": "user-1",
            "request_id": "abc",
        }

        unbind_contextvars("subscriber_id")
        assert structlog.contextvars.get_contextvars() == {"request_id": "abc"}

    def test_clear_contextvars(self) -> None:
        """Test clearing all context variables."""
        bind_contextvars(subscriber_id="user-1")
        clear_contextvars()
        assert structlog.contextvars.get_contextvars() == {}


class TestLoggerMixin:
    """Tests for LoggerMixin class."""

    def test_logger_mixin(self) -> None:
        """Test that LoggerMixin provides a logger property."""

        class BillingJob(LoggerMixin):
            def run(self) -> str:
                self.logger.info("billing_job_ran", action="testing")
                return "done"

        assert BillingJob().run() == "done"

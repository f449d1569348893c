"""
Tests for structured logging helpers
"""

import json
import logging
from unittest.mock import patch

import pytest

from infrastructure.config.environments import get_environment_config
from infrastructure.monitoring.logging_service import (
    ErrorTracker,
    StructuredFormatter,
    log_conversation_event,
    log_execution_time,
    log_stream_metrics,
    setup_logging,
)


class RecordingHandler(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestLoggingHelpers:

    def setup_method(self):
        self.handler = RecordingHandler()
        self.logger = logging.getLogger("tests.logging_service")
        self.logger.setLevel(logging.DEBUG)
        self.logger.addHandler(self.handler)

    def teardown_method(self):
        self.logger.removeHandler(self.handler)

    def test_structured_formatter_includes_extra_fields(self):
        log_stream_metrics(self.logger, "c1", "openai/gpt-4o-mini", ttft_ms=12.345, deltas=4, attempts=2)

        data = json.loads(StructuredFormatter().format(self.handler.records[-1]))

        assert data["message"] == "Stream metrics"
        assert data["extra"]["conversation_id"] == "c1"
        assert data["extra"]["ttft_ms"] == 12.3
        assert data["extra"]["attempts"] == 2

    def test_conversation_event(self):
        log_conversation_event(self.logger, "truncated", "c1", upto_index=2)

        record = self.handler.records[-1]
        assert record.conversation_event_type == "truncated"
        assert record.upto_index == 2

    def test_execution_time_logs_failures(self):
        with pytest.raises(ValueError):
            with log_execution_time(self.logger, "explode"):
                raise ValueError("boom")

        record = self.handler.records[-1]
        assert record.levelno == logging.ERROR
        assert record.status == "error"

    def test_error_tracker_counts_by_context(self):
        tracker = ErrorTracker(self.logger)

        tracker.track_error(RuntimeError("a"), "persist_conversation")
        tracker.track_error(RuntimeError("b"), "persist_conversation")

        assert tracker.error_counts == {"RuntimeError:persist_conversation": 2}
        assert self.handler.records[-1].error_count == 2


class TestSetupLogging:
    """Test handler installation from configuration"""

    def setup_method(self):
        self.root = logging.getLogger()
        self.saved_handlers = list(self.root.handlers)
        self.saved_level = self.root.level

    def teardown_method(self):
        self.root.handlers[:] = self.saved_handlers
        self.root.setLevel(self.saved_level)

    @patch.dict('os.environ', {'APP_ENV': 'production'})
    def test_production_console_logs_json(self):
        config = get_environment_config()
        config.logging.enable_file_logging = False

        with patch('infrastructure.monitoring.logging_service.get_config', return_value=config):
            setup_logging()

        assert self.root.level == logging.WARNING
        assert len(self.root.handlers) == 1
        assert isinstance(self.root.handlers[0].formatter, StructuredFormatter)

    def test_development_console_is_human_readable(self):
        config = get_environment_config("development")
        config.logging.enable_file_logging = False

        with patch('infrastructure.monitoring.logging_service.get_config', return_value=config):
            setup_logging()

        assert self.root.level == logging.DEBUG
        assert not isinstance(self.root.handlers[0].formatter, StructuredFormatter)

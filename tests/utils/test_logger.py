"""
Unit Tests for Logging Utilities
"""

import logging

import pytest
import structlog
from structlog.testing import capture_logs

from tradeguard.config import LoggingConfig
from tradeguard.utils import logger as logger_module
from tradeguard.utils.logger import (
    SensitiveDataMasker,
    SensitiveDataProcessor,
    build_processors,
    configure_logging,
    get_logger,
)


@pytest.mark.unit
class TestSensitiveDataMasker:
    """Test masking of sensitive values in event dictionaries."""

    @pytest.fixture
    def masker(self):
        return SensitiveDataMasker(["password", "card_number", "cvv"])

    def test_masks_top_level_fields(self, masker):
        masked = masker.mask_dict({"user_id": "user-1", "password": "hunter2"})

        assert masked == {"user_id": "user-1", "password": "***MASKED***"}

    def test_matching_is_case_insensitive(self, masker):
        assert masker.mask_dict({"Card_Number": "4111"})["Card_Number"] == "***MASKED***"

    def test_masks_nested_dicts_and_lists(self, masker):
        event = {
            "payment": {"cvv": "123", "amount": 100},
            "cards": [{"card_number": "4111", "brand": "visa"}, "opaque"],
        }

        masked = masker.mask_dict(event)

        assert masked["payment"] == {"cvv": "***MASKED***", "amount": 100}
        assert masked["cards"] == [{"card_number": "***MASKED***", "brand": "visa"}, "opaque"]

    def test_input_not_mutated(self, masker):
        event = {"password": "hunter2"}
        masker.mask_dict(event)

        assert event == {"password": "hunter2"}

    def test_processor(self, masker):
        processor = SensitiveDataProcessor(masker)

        result = processor(None, "info", {"event": "login", "password": "hunter2"})

        assert result == {"event": "login", "password": "***MASKED***"}


@pytest.mark.unit
class TestLoggingConfiguration:
    """Test processor chains and one-time configuration."""

    def test_json_processors(self):
        processors = build_processors(LoggingConfig(format="json"))

        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert any(isinstance(p, SensitiveDataProcessor) for p in processors)

    def test_console_processors(self):
        processors = build_processors(LoggingConfig(format="console"))

        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_level_normalized(self):
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_configure_once_unless_forced(self, monkeypatch):
        basic_calls = []
        structlog_calls = []
        monkeypatch.setattr(logger_module, "_configured", False)
        monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: basic_calls.append(kwargs))
        monkeypatch.setattr(structlog, "configure", lambda **kwargs: structlog_calls.append(kwargs))

        configure_logging(LoggingConfig(level="WARNING"))
        configure_logging(LoggingConfig(level="DEBUG"))

        assert len(structlog_calls) == 1
        assert basic_calls[0]["level"] == logging.WARNING

        configure_logging(LoggingConfig(level="DEBUG"), force=True)

        assert len(structlog_calls) == 2
        assert basic_calls[1]["level"] == logging.DEBUG
        assert basic_calls[1]["force"] is True

    def test_get_logger_binds_context(self):
        with capture_logs() as logs:
            get_logger("tradeguard.test", request_id="req-1").info("assessment complete", score=0.4)

        assert logs == [
            {"request_id": "req-1", "score": 0.4, "event": "assessment complete", "log_level": "info"}
        ]

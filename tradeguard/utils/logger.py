"""
TradeGuard - Logging Utilities

Structured logging configuration for the fraud detection engine.
structlog renders events; the standard library logging module is the sink.
"""

import logging
import sys
from typing import Any, Dict, Iterable, Optional

import structlog

from ..config import LoggingConfig

_configured = False


class SensitiveDataMasker:
    """Masks sensitive data in log events."""

    def __init__(self, sensitive_fields: Iterable[str]):
        self.sensitive_fields = set(field.lower() for field in sensitive_fields)
        self.mask_value = "***MASKED***"

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively mask sensitive fields in dictionary."""
        masked_data = {}

        for key, value in data.items():
            if isinstance(key, str) and key.lower() in self.sensitive_fields:
                masked_data[key] = self.mask_value
            elif isinstance(value, dict):
                masked_data[key] = self.mask_dict(value)
            elif isinstance(value, list):
                masked_data[key] = [
                    self.mask_dict(item) if isinstance(item, dict) else item
                    for item in value
                ]
            else:
                masked_data[key] = value

        return masked_data


class SensitiveDataProcessor:
    """structlog processor applying a SensitiveDataMasker."""

    def __init__(self, masker: SensitiveDataMasker):
        self.masker = masker

    def __call__(self, logger, method_name, event_dict):
        return self.masker.mask_dict(event_dict)


def build_processors(config: LoggingConfig) -> list:
    """Build the processor chain for the configured output format."""
    masker = SensitiveDataMasker(config.sensitive_fields)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        SensitiveDataProcessor(masker),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    return processors


def configure_logging(config: Optional[LoggingConfig] = None, force: bool = False) -> None:
    """
    Configure structlog and the standard library root logger.

    Safe to call more than once; only the first call takes effect unless
    force is set.

    Args:
        config: Logging configuration (defaults read from environment)
        force: Reconfigure even if logging was already configured
    """
    global _configured

    if _configured and not force:
        return

    config = config or LoggingConfig()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, config.level),
        force=force,
    )

    structlog.configure(
        processors=build_processors(config),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: Optional[str] = None, **initial_values: Any):
    """Return a structlog logger bound to optional initial context."""
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger

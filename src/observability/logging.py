"""Structured logging configuration using structlog.

Provides JSON logging for production and console logging for development.
Webhook secrets and API keys must never reach a log line, so a redaction
processor masks them by key name before rendering.
"""

import sys
from collections.abc import MutableMapping
from typing import Any, cast

import structlog
from structlog.types import EventDict, WrappedLogger

SENSITIVE_KEYS: frozenset[str] = frozenset({
    "secret",
    "secret_key",
    "api_key",
    "apikey",
    "raw_key",
    "key_hash",
    "authorization",
    "x-api-key",
    "token",
    "bearer",
})


class SecretRedactor:
    """Processor that masks sensitive values in log events."""

    def __call__(
        self,
        _logger: WrappedLogger,
        _method_name: str,
        event_dict: EventDict,
    ) -> EventDict:
        return cast(EventDict, self._redact_dict(event_dict))

    def _redact_dict(self, data: MutableMapping[str, Any]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key, value in data.items():
            if key.lower() in SENSITIVE_KEYS:
                result[key] = "[REDACTED]"
            elif isinstance(value, dict):
                result[key] = self._redact_dict(value)
            elif isinstance(value, list | tuple):
                result[key] = self._redact_list(value)
            else:
                result[key] = value
        return result

    def _redact_list(self, data: list[Any] | tuple[Any, ...]) -> list[Any]:
        result: list[Any] = []
        for item in data:
            if isinstance(item, dict):
                result.append(self._redact_dict(item))
            elif isinstance(item, list | tuple):
                result.append(self._redact_list(item))
            else:
                result.append(item)
        return result


def setup_logging(level: str = "INFO", format: str = "json") -> None:
    """Configure structured logging.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR).
        format: Output format - "json" for production, "console" for development.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        SecretRedactor(),
    ]

    if format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    level_map = {
        "DEBUG": 10,
        "INFO": 20,
        "WARNING": 30,
        "ERROR": 40,
        "CRITICAL": 50,
    }
    level_num = level_map.get(level.upper(), 20)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=True,
    )

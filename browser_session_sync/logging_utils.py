"""
Structured JSON logging utilities.

Sync engine log records carry context fields (cycle_id, phase, op kind)
that are easier to query when emitted as single-line JSON.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import IO, Any

PACKAGE_LOGGER = "browser_session_sync"

# Attributes every LogRecord has; anything else arrived through ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Each record becomes one JSON object with:
    - timestamp: when the record was created, ISO 8601 in UTC
    - level, logger, message
    - exception: formatted traceback, when present
    - static_fields given at construction (e.g. a device name)
    - any fields passed through ``extra`` or a SyncLoggerAdapter
    """

    def __init__(self, static_fields: Mapping[str, Any] | None = None) -> None:
        super().__init__()
        self.static_fields = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **self.static_fields,
        }
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_obj[key] = value
            except (TypeError, ValueError):
                log_obj[key] = str(value)

        return json.dumps(log_obj, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = PACKAGE_LOGGER,
    stream: IO[str] | None = None,
    static_fields: Mapping[str, Any] | None = None,
) -> logging.Logger:
    """
    Route a logger's output through StructuredJsonFormatter.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: the package logger)
        stream: Destination (default: stdout)
        static_fields: Fields added to every line

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)

    # Replace rather than stack handlers when called twice
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter(static_fields))
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def get_sync_logger(name: str) -> logging.Logger:
    """Logger named ``browser_session_sync.{name}``."""
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")


class SyncLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that stamps sync context onto every record.

    The engine creates one per cycle with a fresh ``cycle_id`` and binds the
    current phase as the cycle advances. Fields passed through ``extra`` on
    an individual call take precedence over the bound context.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs

    def bind(self, **fields: Any) -> SyncLoggerAdapter:
        """Return an adapter on the same logger with extra context fields."""
        return SyncLoggerAdapter(self.logger, {**self.extra, **fields})

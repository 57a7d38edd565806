"""
Structured JSON logging utilities.

Sync cycles run unattended on page load or from a scheduler, so log
lines are emitted as single-line JSON objects that log collectors can
index by collection and phase.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
}


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs as single-line JSON objects with consistent fields:
    - timestamp: ISO 8601 format in UTC
    - level: Log level (INFO, WARNING, ERROR, etc.)
    - logger: Logger name
    - message: Log message
    - Additional context fields from extra dict (collection, phase, ...)
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                try:
                    json.dumps(value)
                    log_obj[key] = value
                except (TypeError, ValueError):
                    log_obj[key] = str(value)

        return json.dumps(log_obj, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = "smart_sync",
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Configure structured JSON logging.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: the smart_sync package logger)
        stream: Output stream (default: stdout)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())

    logger.addHandler(handler)
    logger.setLevel(level)

    return logger


def get_sync_logger(name: str) -> logging.Logger:
    """
    Get a logger for sync components with consistent naming.

    Args:
        name: Component name (e.g., 'orchestrator', 'cosmos')

    Returns:
        Logger instance with name 'smart_sync.{name}'
    """
    return logging.getLogger(f"smart_sync.{name}")


class CollectionLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that stamps the collection name on every message.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Add extra context to log record."""
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs

"""
Logging helpers for episodic memory.

Library modules log through ``logging.getLogger(__name__)``; entry points
call :func:`configure_logging` once to decide how records are rendered.
JSON output is intended for log collectors, plain text for terminals.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
}

_TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class StructuredJsonFormatter(logging.Formatter):
    """
    Render log records as single-line JSON objects.

    Fields: timestamp (UTC ISO 8601), level, logger, message, exception
    when present, plus anything passed through ``extra``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
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


def configure_logging(
    level: int = logging.INFO,
    json_format: bool = False,
    logger_name: str | None = None,
) -> logging.Logger:
    """
    Configure logging for an entry point.

    Args:
        level: Logging level (default: INFO)
        json_format: Emit structured JSON instead of plain text
        logger_name: Specific logger to configure (default: root logger)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(StructuredJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(level)

    # asyncpg chatters at DEBUG about pool internals
    logging.getLogger("asyncpg").setLevel(max(level, logging.WARNING))

    return logger


def get_storage_logger(name: str) -> logging.Logger:
    """
    Get a logger for a storage component with consistent naming.

    Args:
        name: Component name (e.g., 'sqlite', 'postgres')

    Returns:
        Logger instance named 'episodic_memory.{name}'
    """
    return logging.getLogger(f"episodic_memory.{name}")


class StorageLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that attaches fixed context (e.g. backend name) to records."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs

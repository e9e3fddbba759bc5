"""Structured logging for the knowledge store.

Every line is ``key=value`` pairs: timestamp, level, logger and message
first, then the state id and operation the line is about, then any other
context passed through ``log_with_context``.
"""

import logging
import sys
from typing import Any

from knowledge_store.core.errors import StateStoreError

# Promoted to top-level fields, in this order, ahead of other context
CONTEXT_FIELDS = ("state_id", "operation")


def _render(value: Any) -> str:
    text = str(value)
    if not text or any(c.isspace() or c in '="' for c in text):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


class StructuredFormatter(logging.Formatter):
    """Structured key=value log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Store errors carry their own state id and operation
        error = record.exc_info[1] if record.exc_info else None
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is None and isinstance(error, StateStoreError):
                value = getattr(error, field)
            if value is not None:
                log_data[field] = value

        for key, value in getattr(record, "extra_data", {}).items():
            log_data.setdefault(key, value)

        line = " ".join(f"{k}={_render(v)}" for k, v in log_data.items())
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _configured_level() -> int:
    try:
        from knowledge_store.core.config import get_settings

        env = get_settings().KNOWLEDGE_STORE_ENV
    except Exception:
        # Settings unavailable (e.g. invalid environment)
        return logging.INFO
    return logging.DEBUG if env == "dev" else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger writing structured lines to stdout.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger at DEBUG in the dev environment, INFO otherwise
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)
        logger.setLevel(_configured_level())

    return logger


def log_with_context(logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    """
    Log with context fields.

    ``state_id`` and ``operation`` become top-level fields; everything else
    is appended after them.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Context fields (e.g., state_id, meetings, duration_seconds)
    """
    extra: dict[str, Any] = {}
    for field in CONTEXT_FIELDS:
        if field in kwargs:
            extra[field] = kwargs.pop(field)
    extra["extra_data"] = kwargs

    logger.log(level, msg, extra=extra)

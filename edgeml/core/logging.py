"""Centralized logging configuration.

This module provides:
- Unified logger setup with console and optional rotating file handlers
- Structured JSON logging with contextual fields
- Operation ID context propagation via contextvars
- Helper functions for getting configured loggers
- Error message sanitization for secure logging
"""

import logging
import re
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from pythonjsonlogger.json import JsonFormatter

from edgeml.core.config import Settings, get_settings

# Patterns for sensitive data sanitization
_PATH_PATTERN = re.compile(r"(/[^\s:]+)+")
_CREDENTIAL_PATTERNS = [
    re.compile(r"(password|secret|token|api[_-]?key|auth)[=:]\s*\S+", re.IGNORECASE),
    re.compile(r"Bearer\s+\S+", re.IGNORECASE),
]

# Context variable for operation ID propagation (one per download/install/batch)
_operation_id: ContextVar[str | None] = ContextVar("operation_id", default=None)

CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(operation_id)s | %(message)s"


def get_operation_id() -> str | None:
    """Get the current operation ID from context."""
    return _operation_id.get()


def set_operation_id(operation_id: str | None) -> None:
    """Set the operation ID in context."""
    _operation_id.set(operation_id)


@contextmanager
def operation_context(prefix: str) -> Iterator[str]:
    """Bind a fresh operation ID for the duration of a block.

    Args:
        prefix: Short operation name, e.g. "download" or "batch"

    Yields:
        The generated operation ID
    """
    operation_id = f"{prefix}-{uuid.uuid4().hex[:12]}"
    token = _operation_id.set(operation_id)
    try:
        yield operation_id
    finally:
        _operation_id.reset(token)


class ContextFilter(logging.Filter):
    """Filter that adds contextual information to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add operation_id to the log record."""
        record.operation_id = get_operation_id()  # type: ignore[attr-defined]
        return True


class CustomJsonFormatter(JsonFormatter):
    """Custom JSON formatter with ISO timestamp and extra fields."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        """Add custom fields to the JSON log record."""
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(UTC).isoformat()
        log_record["level"] = record.levelname
        log_record["component"] = record.name

        if getattr(record, "operation_id", None):
            log_record["operation_id"] = record.operation_id  # type: ignore[attr-defined]


def setup_logging(settings: Settings | None = None) -> None:
    """Configure process-wide logging.

    Sets up:
    - Console handler (StreamHandler), plain text or JSON per ``log_format``
    - File handler (RotatingFileHandler) when ``log_file_path`` is set

    Args:
        settings: Settings to use; defaults to the cached application settings
    """
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    context_filter = ContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.addFilter(context_filter)
    if settings.log_format == "json":
        console_handler.setFormatter(CustomJsonFormatter("%(message)s"))
    else:
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root_logger.addHandler(console_handler)

    if settings.log_file_path:
        try:
            log_path = Path(settings.log_file_path)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                filename=str(log_path),
                maxBytes=settings.log_file_max_bytes,
                backupCount=settings.log_file_backup_count,
                encoding="utf-8",
            )
            file_handler.setLevel(log_level)
            file_handler.addFilter(context_filter)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.warning(f"Could not set up file logging: {e}")

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    root_logger.info(
        f"Logging configured: level={settings.log_level}, "
        f"format={settings.log_format}, file={settings.log_file_path}"
    )


def sanitize_error(error: Exception, max_length: int = 500) -> str:
    """Sanitize error message for secure logging.

    Removes potentially sensitive information from error messages:
    - Full file paths (keeps only filename)
    - Credentials/tokens/API keys
    - Truncates long error messages

    Args:
        error: The exception to sanitize
        max_length: Maximum length of the sanitized message (default 500)

    Returns:
        Sanitized error message safe for logging
    """
    msg = str(error)

    for pattern in _CREDENTIAL_PATTERNS:
        msg = pattern.sub("[REDACTED]", msg)

    def _simplify_path(match: re.Match[str]) -> str:
        path = match.group(0)
        parts = path.rsplit("/", 1)
        if len(parts) == 2:
            return f".../{parts[1]}"
        return path

    msg = _PATH_PATTERN.sub(_simplify_path, msg)

    if len(msg) > max_length:
        msg = msg[:max_length] + "...[truncated]"

    return msg


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)

"""
Centralized Logging Configuration with Structured Logging Support

Supports both traditional text logging and structured JSON logging where every
record carries the id of the job being processed.

Usage:
    from minions.logging_config import configure_logging, job_context

    configure_logging(log_level="INFO", structured=True)

    with job_context(job.id):
        logger.info("Processing job")  # correlation_id == job.id in JSON output

Environment Variables:
    MINIONS_LOG_DIR - Override default log directory
    MINIONS_LOG_LEVEL - Set log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from .sanitizer import redact_secrets

# Context var for correlation ID (the current job id)
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_STANDARD_ATTRS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "exc_info",
    "exc_text",
    "stack_info",
    "message",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter with correlation ID for structured logging.

    Each log entry includes timestamp, level, logger name, message, correlation ID,
    and any extra fields added to the log record.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_secrets(record.getMessage()),
            "correlation_id": correlation_id_var.get(),
        }

        if record.exc_info:
            log_data["exception"] = redact_secrets(self.formatException(record.exc_info))

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class RedactingFormatter(logging.Formatter):
    """Plain text formatter that redacts credentials from the rendered line."""

    def format(self, record: logging.LogRecord) -> str:
        return redact_secrets(super().format(record))


@contextmanager
def job_context(job_id: str) -> Iterator[None]:
    """Bind `job_id` as the correlation id for the duration of the block."""
    token = correlation_id_var.set(job_id)
    try:
        yield
    finally:
        correlation_id_var.reset(token)


def get_default_log_dir(workspace: Optional[Path] = None) -> Path:
    """
    Get the default log directory.

    Args:
        workspace: Repository root (defaults to current working directory)

    Returns:
        Default log directory path
    """
    if "MINIONS_LOG_DIR" in os.environ:
        return Path(os.environ["MINIONS_LOG_DIR"])

    if workspace is None:
        workspace = Path.cwd()
    return workspace / "logs"


def configure_logging(
    log_level: Optional[str] = None,
    log_dir: Optional[Path] = None,
    log_to_console: bool = True,
    log_to_file: bool = False,
    log_filename: Optional[str] = None,
    structured: bool = False,
) -> logging.Logger:
    """
    Configure logging for the `minions` logger hierarchy.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Log directory (overrides default)
        log_to_console: Whether to log to console
        log_to_file: Whether to log to file
        log_filename: Custom log filename (default: minions_<timestamp>.log)
        structured: Emit JSON lines instead of text

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger("minions")

    # Clear existing handlers to avoid duplicates
    logger.handlers.clear()

    if log_level is None:
        log_level = os.environ.get("MINIONS_LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, log_level.upper()))

    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = RedactingFormatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, log_level.upper()))
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_to_file:
        if log_dir is None:
            log_dir = get_default_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)

        if log_filename is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_filename = f"minions_{timestamp}.log"

        log_path = log_dir / log_filename
        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        logger.info(f"Logging to: {log_path}")

    return logger


def setup_structured_logging(log_level: Optional[str] = None, **kwargs) -> logging.Logger:
    """JSON-lines logging; each record carries the current job id as `correlation_id`."""
    return configure_logging(log_level=log_level, structured=True, **kwargs)

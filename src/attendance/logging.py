"""Structured logging for the attendance engine using structlog.

JSON output for deployed scanners, console output for development. Scan and
session identifiers are bound through contextvars so every event emitted
while a credential is processed carries them without threading them through
each call.
"""

import logging
import sys
from typing import TextIO

import structlog

from src.attendance.config import AttendanceConfig


def setup_logging(
    json_output: bool = False,
    log_level: str = "INFO",
    stream: TextIO | None = None,
) -> None:
    """Configure structlog processors and the output renderer.

    Logs go to stderr by default; stdout belongs to the scan results a CLI
    prints (one JSON object per scan with --json).

    Args:
        json_output: If True, output JSON (production). If False, console format (dev).
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        stream: Destination for every log line; defaults to sys.stderr.
    """
    stream = stream or sys.stderr
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )

    # requests/urllib3 log through stdlib; route them to the same stream
    root = logging.getLogger()
    root.handlers = [logging.StreamHandler(stream)]
    root.setLevel(numeric_level)


def setup_logging_from_config(config: AttendanceConfig) -> None:
    """Configure logging from the LOG_JSON / LOG_LEVEL settings."""
    setup_logging(json_output=config.log_json, log_level=config.log_level)


def bind_scan_context(**values: object) -> None:
    """Attach key/value pairs to every log event in the current context."""
    structlog.contextvars.bind_contextvars(**values)


def clear_scan_context(*keys: str) -> None:
    """Remove previously bound keys from the logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance bound with the module name.

    Args:
        name: Logger name (typically __name__ from calling module).

    Returns:
        Configured structlog logger with module name context.
    """
    return structlog.get_logger(name)

"""
Structured logging configuration using structlog.

JSON logs in production (one event per line, parseable by log shippers)
and colored console output while debugging crawls locally.

Features:
    - Context variables so every line emitted while a job runs carries its job_id
    - CallsiteParameterAdder for filename, line number, function name
    - EventRenamer for JSON-standard "msg" key
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.processors import (
    CallsiteParameter,
    CallsiteParameterAdder,
    EventRenamer,
)
from structlog.typing import BindableLogger, Processor

from comicrawl.core.config import get_settings


def _add_app_context(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add application context to all log entries."""
    settings = get_settings()
    event_dict["app"] = settings.app_name
    event_dict["environment"] = "development" if settings.debug else "production"
    return event_dict


def _configure_stdlib_logging(log_level: str) -> None:
    """Route standard library loggers through stdout and quiet the chatty ones."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level),
    )

    for noisy in ("httpx", "httpcore", "hpack", "aiosqlite", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def configure_logging() -> None:
    """
    Configure structlog for the application.

    Debug mode renders colored console output; otherwise JSON with
    formatted exception info. Call once at process startup (CLI command,
    API lifespan or worker).
    """
    settings = get_settings()

    _configure_stdlib_logging(settings.log_level)

    # Shared by console and JSON output
    shared_processors: list[Processor] = [
        # Merge context variables first (async-safe)
        structlog.contextvars.merge_contextvars,
        # Level early so the filtering wrapper can drop lines
        structlog.processors.add_log_level,
        # Where the line was emitted from
        CallsiteParameterAdder(
            [
                CallsiteParameter.FILENAME,
                CallsiteParameter.LINENO,
                CallsiteParameter.FUNC_NAME,
            ]
        ),
        # UTC ISO timestamps
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_app_context,
        # Render stack info if requested
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.debug:
        # Development: colored console lines
        processors: list[Processor] = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
                sort_keys=True,
            ),
        ]
    else:
        # Production: one JSON object per line
        processors = [
            *shared_processors,
            # Rename "event" to "msg" (JSON logging standard)
            EventRenamer(to="msg"),
            # Tracebacks as a string field
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        # Drops calls below the configured level before any processor runs
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, settings.log_level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None, **initial_context: Any) -> BindableLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically module name)
        **initial_context: Initial context to bind to all log entries

    Returns:
        BindableLogger: Structured logger with optional initial context

    Example:
        >>> logger = get_logger("handlers.chapter", job_id=42)
        >>> logger.info("Images discovered", count=18)
    """
    logger = structlog.get_logger(name)

    if initial_context:
        logger = logger.bind(**initial_context)

    return logger


@contextmanager
def bound_context(**context: Any) -> Iterator[None]:
    """
    Temporarily bind context variables within a context manager.

    Uses structlog's contextvars, so the binding is scoped to the
    current asyncio task.

    Example:
        >>> with bound_context(job_id=7, level="comic"):
        ...     logger.info("Listing chapters")  # Includes job_id and level
    """
    with structlog.contextvars.bound_contextvars(**context):
        yield

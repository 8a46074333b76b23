"""Structured logging setup for the response gateway.

Uses structlog so provider calls and aggregate updates log as key/value
events that can be correlated by request id.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

SECRET_KEYS = frozenset({"api_key", "authorization", "credential", "token"})


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential-like values before rendering."""
    for key in event_dict:
        if key.lower() in SECRET_KEYS and event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def setup_logging(log_level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structlog for the gateway process.

    Args:
        log_level: Minimum level name; unknown names fall back to INFO
        json_output: Render JSON lines (production) instead of console output
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
    ]

    if json_output:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # uvicorn and httpx log through the standard library
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """Module logger, optionally pre-bound with fields such as ``provider``."""
    logger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger


def bind_context(**context: Any) -> None:
    """Attach fields (the request id) to every event logged while serving a request."""
    structlog.contextvars.bind_contextvars(**context)


def clear_context() -> None:
    """Drop the per-request fields."""
    structlog.contextvars.clear_contextvars()

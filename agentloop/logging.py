"""Logging configuration for agentloop."""

import logging
import sys
from contextlib import AbstractContextManager
from typing import Any

import structlog

from agentloop.config import Config


def configure_logging(config: Config | None = None, verbose: bool = False) -> None:
    """Configure structlog; verbose forces DEBUG regardless of config."""
    config = config or Config()
    level_name = "DEBUG" if verbose else config.logging.level.upper()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if config.logging.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level_name, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def run_context(**values: Any) -> AbstractContextManager[None]:
    """Bind key/values (None skipped) to every log line emitted in the block."""
    return structlog.contextvars.bound_contextvars(
        **{key: value for key, value in values.items() if value is not None}
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()

"""Structured logging configuration.

Configures structlog once per process from a LoggingConfig section. Every
module logs through ``structlog.get_logger()`` with snake_case event names
and keyword context; this module only decides rendering, level and sink.

Usage:
    from agentwire.core.config import get_settings
    from agentwire.core.logging_setup import configure_logging

    configure_logging(get_settings().logging)
"""

import logging
import sys
from typing import Any, List

import structlog

from agentwire.core.config import LoggingConfig


def build_processors(fmt: str) -> List[Any]:
    """Return the processor chain for the given renderer name."""
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if fmt == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors.append(structlog.processors.JSONRenderer())
    return processors


def configure_logging(config: LoggingConfig) -> None:
    """Configure structlog according to ``config``.

    Args:
        config: Logging section of the settings.
    """
    stream = sys.stdout if config.output == "stdout" else sys.stderr
    level = logging.getLevelName(config.level)

    structlog.configure(
        processors=build_processors(config.format),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )

"""Structured logging setup shared by the CLI and library users."""

import logging
import sys

import structlog
from structlog.stdlib import LoggerFactory

from .exceptions import ConfigError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def configure_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """
    Configure structlog on top of the standard library logging module.

    Args:
        log_level: Name of the minimum level to emit (e.g. "DEBUG", "INFO")
        json_logs: Render events as JSON lines instead of the console format

    Raises:
        ConfigError: If the level name is unknown
    """
    level_name = log_level.upper()
    if level_name not in LOG_LEVELS:
        raise ConfigError(f"Unknown log level {log_level!r}, expected one of {', '.join(LOG_LEVELS)}")

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level_name),
        stream=sys.stderr,
        force=True,
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

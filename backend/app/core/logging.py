"""Structured logging setup (structlog over the stdlib logging module)."""

import logging
import sys

import structlog

from app.core.config import settings


def configure_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """
    Configure structlog and stdlib logging for the current process.

    Args:
        level: Log level name (defaults to settings.LOG_LEVEL)
        json_logs: Render JSON lines instead of console output
            (defaults to settings.LOG_JSON)
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    use_json = settings.LOG_JSON if json_logs is None else json_logs

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

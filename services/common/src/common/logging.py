"""Centralised logging configuration with JSON output."""

from __future__ import annotations

import logging
import sys
from typing import Any, Dict, Optional

import structlog

from .config import settings

_CONFIGURED = False


def _configure_structlog(level: str, log_format: str) -> None:
    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Initialise stdlib + structlog logging.

    Called implicitly by :func:`get_logger`; call it explicitly (e.g. from the
    CLI) to override the level or renderer configured in settings.
    """

    global _CONFIGURED
    level = level or settings.log_level
    log_format = log_format or settings.log_format
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )
    _configure_structlog(level, log_format)
    _CONFIGURED = True


def get_logger(name: str, **initial_values: Dict[str, Any]) -> structlog.stdlib.BoundLogger:
    """Return a bound structured logger."""

    if not _CONFIGURED:
        configure_logging()
    logger = structlog.get_logger(name)
    if initial_values:
        return logger.bind(**initial_values)
    return logger


__all__ = ["configure_logging", "get_logger"]

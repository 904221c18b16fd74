"""Structured logging utilities."""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional

from capacity_engine.utils.config import get_settings


_LOGGER_INITIALIZED = False

# Outbound webhook calls log every request at INFO otherwise.
_QUIET_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure process-wide logging once.

    Admission, pricing and relay lines share one pipe-delimited format so a
    single booking can be followed across layers with grep.
    """

    global _LOGGER_INITIALIZED
    if _LOGGER_INITIALIZED:
        return

    settings = get_settings()
    resolved_level = (level or settings.log_level).upper()

    logging.basicConfig(
        level=resolved_level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    for noisy in _QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
    _LOGGER_INITIALIZED = True


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger for the requested module."""
    configure_logging()
    return logging.getLogger(name)


def fields(**values: Any) -> str:
    """Render ``key=value`` pairs in the pipe-delimited house style."""
    return " | ".join(f"{key}={value}" for key, value in values.items())

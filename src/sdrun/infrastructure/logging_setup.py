"""Logging bootstrap: stdlib logging plus structlog, configured once."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


_LOG_CONFIGURED = False


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure stdlib logging and structlog once per process.

    Log lines go to stderr so a launched command's stdout, when inherited,
    stays clean.
    """
    global _LOG_CONFIGURED
    if _LOG_CONFIGURED:
        return

    log_level = getattr(logging, str(level or "INFO").upper(), logging.INFO)

    logging.basicConfig(level=log_level, format="%(message)s", stream=sys.stderr)
    # dbus_fast logs every malformed or unhandled message at debug level.
    logging.getLogger("dbus_fast").setLevel(max(log_level, logging.INFO))

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_logs:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    _LOG_CONFIGURED = True

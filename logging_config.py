"""
logging_config.py - Centralized logging configuration.

Every pipeline module logs through `get_logger(__name__)` using the
`event_name | key=value | key=value` message style. The CLI and HTTP entry
points call `setup_logging()` once; library callers can leave logging alone
and attach their own handlers.

Environment variables:
    RECEIPT_LOG_LEVEL: DEBUG, INFO, WARNING or ERROR. Used when no explicit
    level is passed to setup_logging(). Default: INFO
"""

from __future__ import annotations

import logging
import os
import sys

DEFAULT_LOG_LEVEL = logging.INFO

TEXT_FORMAT = "%(asctime)s [%(name)-20s] %(levelname)-7s %(message)s"
JSON_FORMAT = (
    '{"timestamp":"%(asctime)s","level":"%(levelname)s",'
    '"module":"%(name)s","message":"%(message)s"}'
)

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


def level_from_env(default: int = DEFAULT_LOG_LEVEL) -> int:
    """Resolve RECEIPT_LOG_LEVEL to a logging level, falling back to `default`."""
    raw = os.environ.get("RECEIPT_LOG_LEVEL", "").strip().upper()
    return _LEVELS.get(raw, default)


def setup_logging(level: int | None = None, json_format: bool = False) -> None:
    """Configure root logger with consistent formatting.

    Args:
        level: Logging level. None reads RECEIPT_LOG_LEVEL.
        json_format: If True, emit JSON-like log lines.
    """
    if level is None:
        level = level_from_env()

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    formatter = logging.Formatter(
        JSON_FORMAT if json_format else TEXT_FORMAT,
        datefmt="%H:%M:%S",
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)

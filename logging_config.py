"""
logging_config.py - Centralized logging configuration.

Every engine module logs through a named logger obtained from get_logger().
Lines follow the `event_name | key=value | key=value` convention so they can
be grepped per operation (duplicate_check, cash_audit, provider_audit,
orphan_report, production_import, ...).
"""

from __future__ import annotations

import logging
import os
import sys

LOG_LEVEL_ENV = "LABRECON_LOG_LEVEL"


def setup_logging(level: int | None = None, json_format: bool = False) -> None:
    """Configure root logger with consistent formatting.

    Args:
        level: Logging level. Falls back to $LABRECON_LOG_LEVEL, then INFO.
        json_format: If True, emit JSON-like log lines.
    """
    if level is None:
        level_name = os.getenv(LOG_LEVEL_ENV, "INFO").strip().upper()
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if json_format:
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","level":"%(levelname)s",'
            '"module":"%(name)s","message":"%(message)s"}',
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(name)-16s] %(levelname)-7s %(message)s",
            datefmt="%H:%M:%S",
        )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)

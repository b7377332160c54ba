"""
Logging setup shared by the store, the schedule and the CLI.

Module loggers propagate to the ``fasting_tracker`` package logger, which is
configured once from the settings by :func:`configure_logging`.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

PACKAGE_LOGGER = "fasting_tracker"

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str) -> logging.Logger:
    """Get a module logger (usually ``__name__``)."""
    return logging.getLogger(name)


def configure_logging(settings=None) -> logging.Logger:
    """
    Configure the package logger, replacing handlers from an earlier call.

    Args:
        settings: Settings object providing ``log_level`` and ``log_file`` (optional).
            Without it the level comes from ``FASTING_TRACKER_LOG_LEVEL``.
    """
    if settings is not None:
        level_str = str(settings.get("log_level", "INFO"))
        log_file = settings.get("log_file")
    else:
        level_str = os.environ.get("FASTING_TRACKER_LOG_LEVEL", "INFO")
        log_file = None

    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    level = getattr(logging, level_str.upper(), logging.INFO)
    logger.setLevel(level)
    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)

    # stdout belongs to command output
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger

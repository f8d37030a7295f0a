# decay_mem/logging_config.py

"""Loguru logging configuration."""

import os
import sys

from loguru import logger


def setup_logging(level: str | None = None) -> None:
    """Configure the loguru sink; level falls back to $LOG_LEVEL, then INFO."""
    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO").upper()

    logger.remove()
    logger.add(
        sys.stderr,
        format="<level>{time:YYYY-MM-DD HH:mm:ss} | {name}:{function}:{line} | {message}</level>",
        level=level,
        colorize=True,
        backtrace=True,
        diagnose=True,
    )

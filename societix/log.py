"""Centralized logging configuration."""

import os
import sys

from loguru import logger

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.environ.get("LOG_JSON", "0") == "1"

log_format = ' | '.join(
    (
        '<lk>{time:YYYY-MM-DD HH:mm:ss.SSS}</>',
        '<lvl>{level:<8}</>',
        '<c>{name}:{function}:{line}</>',
        '{message}',
        '<y>{extra}</>',
    )
)

# Remove default handler to avoid duplicate output and use custom format
logger.remove()

if LOG_JSON:
    logger.add(sys.stderr, level=LOG_LEVEL, serialize=True)
else:
    logger.add(sys.stderr, level=LOG_LEVEL, format=log_format)

__all__ = ["logger"]

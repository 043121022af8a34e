"""Logging setup for applications embedding the engine."""

import logging
import os
from typing import Optional, Union

PACKAGE_LOGGER = "basecall_lite"


def setup_logging(level: Optional[Union[int, str]] = None) -> logging.Logger:
    """Configure root handlers and the ``basecall_lite`` logger level.

    Args:
        level: Level name or number. Defaults to ``$BASECALL_LOG_LEVEL`` or INFO.

    Returns:
        The package logger.
    """
    if level is None:
        level = os.getenv("BASECALL_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    return logger

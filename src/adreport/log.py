from __future__ import annotations

import sys

from loguru import logger

from adreport.config import Settings


def setup_logging(settings: Settings) -> None:
    """Install the process-wide sinks. Entry points call this once; library code only logs."""
    level = "DEBUG" if settings.debug else settings.log_level
    logger.remove()
    logger.add(sys.stderr, level=level, format="{time:HH:mm:ss} | {level:<7} | {message}")
    if settings.log_file is not None:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(settings.log_file),
            rotation="10 MB",
            retention=5,
            level="DEBUG",
            encoding="utf-8",
        )

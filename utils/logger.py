"""Logging utilities for the AI dispatch service."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from loguru import logger

_LOG_LEVEL = os.getenv("DISPATCH_LOG_LEVEL", "INFO")
_LOG_DIR = Path(os.getenv("DISPATCH_LOG_DIR", "logs"))
_LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = _LOG_LEVEL) -> None:
    """Configure loguru sinks for console (and optional file)."""
    logger.remove()
    logger.add(sys.stdout, level=level, format=_LOG_FORMAT, backtrace=False, diagnose=False)

    if os.getenv("DISPATCH_LOG_TO_FILE", "false").lower() in {"1", "true", "yes"}:
        _LOG_DIR.mkdir(parents=True, exist_ok=True)
        # enqueue: units of work log from the loop thread, routes from Flask threads
        logger.add(
            _LOG_DIR / "dispatch-service.log",
            level=level,
            rotation="10 MB",
            retention="7 days",
            enqueue=True,
            backtrace=False,
            diagnose=False,
        )

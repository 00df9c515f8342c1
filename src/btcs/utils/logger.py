"""Structured logging configuration."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from ..config import settings

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[module]}</cyan> | {message} | {extra}"
)
_CONFIGURED = False


def _configure() -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return
    logger.remove()
    logger.configure(extra={"module": "btcs"})
    logger.add(sys.stderr, level=settings.log_level, format=_FORMAT)
    if settings.log_dir:
        log_dir = Path(settings.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "btcs.log",
            rotation="10 MB",
            retention="10 days",
            level=settings.log_level,
            # JSON lines in production so the analysis events can be shipped as-is.
            serialize=settings.environment == "production",
        )
    _CONFIGURED = True


def get_logger(name: Optional[str] = None):
    _configure()
    return logger.bind(module=name or "btcs")

from __future__ import annotations
import sys
from loguru import logger

from .config import get_settings

def configure_logging(level: str | None = None, *, json: bool | None = None) -> None:
    """Install the process-wide loguru sink. Safe to call more than once."""
    settings = get_settings()
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or settings.log_level).upper(),
        serialize=settings.log_json if json is None else json,
        backtrace=False,
        diagnose=False,
    )

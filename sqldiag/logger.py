"""
Logging configuration using loguru.

Modules obtain a component-bound logger with `get_logger("Connection")`;
the CLI calls `setup_logging` once to install handlers.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

DEFAULT_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[component]} | {message}"

logger.configure(extra={"component": "sqldiag"})


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    rotation: str = "10 MB",
    retention: str = "14 days",
    fmt: str = DEFAULT_FORMAT,
) -> None:
    # Remove default handler
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=fmt,
        colorize=True,
        backtrace=False,
        diagnose=False,
    )
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level.upper(),
            format=fmt,
            rotation=rotation,
            retention=retention,
            enqueue=True,  # Thread-safe
        )


def get_logger(component: str):
    return logger.bind(component=component)

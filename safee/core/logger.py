"""Logging setup for Safee Core.

Module code logs through ``logging.getLogger(__name__)``; this module only
attaches handlers to the ``safee`` logger: console output and an optional
size-rotated log file, both with ISO 8601 timestamps.
"""

import logging
import logging.handlers
import os
from typing import List, Optional

from safee.core.config import Settings, get_settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"
LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _build_handlers(
    name: str,
    log_dir: str,
    file_logging: bool,
    console_logging: bool,
    max_bytes: int,
    backup_count: int,
) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    if file_logging:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, f"{name}.log"), maxBytes=max_bytes, backupCount=backup_count,
        ))
    if console_logging:
        handlers.append(logging.StreamHandler())
    return handlers


def setup_logger(
    name: str,
    log_dir: str = "/var/log/safee",
    level: str = "INFO",
    log_format: Optional[str] = None,
    date_format: Optional[str] = None,
    file_logging: bool = True,
    console_logging: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Configure ``name`` with console and/or rotating file handlers.

    Calling it again for a logger that already has handlers only updates
    the level.

    Raises:
        ValueError: Unknown level name
    """
    if level.upper() not in LEVELS:
        raise ValueError(f"Invalid log level: {level}. Must be one of: {', '.join(LEVELS)}")

    logger = logging.getLogger(name)
    logger.setLevel(level.upper())
    if logger.handlers:
        return logger

    formatter = logging.Formatter(log_format or LOG_FORMAT, datefmt=date_format or DATE_FORMAT)
    for handler in _build_handlers(name, log_dir, file_logging, console_logging, max_bytes, backup_count):
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def configure_logging(settings: Optional[Settings] = None) -> logging.Logger:
    """Configure the ``safee`` logger hierarchy from application settings."""
    settings = settings or get_settings()
    return setup_logger(
        "safee",
        log_dir=settings.log_dir,
        level=settings.log_level,
        file_logging=settings.file_logging,
        console_logging=settings.console_logging,
    )

"""Logging for the OTA orchestrator.

Every component logs under the ``bleota`` root (``bleota.connection``,
``bleota.transport.bleak``, ...), so one ``setup_logger()`` call at startup
routes the whole package to the rotating file and the console. bleak's own
logger is attached to the same handlers at a quieter level; at DEBUG it
dumps every BlueZ/CoreBluetooth property change.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, Optional

ROOT_LOGGER = "bleota"
BLEAK_LOGGER = "bleak"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"


def get_logger(component: str) -> logging.Logger:
    """Return the logger of one package component, e.g. ``get_logger("connection")``."""
    return logging.getLogger(f"{ROOT_LOGGER}.{component}")


def _attach(logger: logging.Logger, handlers: Iterable[logging.Handler], level: int) -> None:
    logger.setLevel(level)
    for handler in handlers:
        if handler not in logger.handlers:
            logger.addHandler(handler)


def setup_logger(
    name: str = ROOT_LOGGER,
    log_file: str = "./logs/bleota.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
    level: int = logging.INFO,
    bleak_level: Optional[int] = logging.WARNING,
) -> logging.Logger:
    """Setup rotating file logger with ISO 8601 timestamps.

    Args:
        name: Root logger of the package
        log_file: Path to log file (created if doesn't exist)
        max_bytes: Max size before rotation
        backup_count: Number of rotated files to keep
        level: Level for the package loggers
        bleak_level: Level for bleak's logger on the same handlers, None leaves it alone

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers if already configured
    if logger.handlers:
        logger.setLevel(level)
        return logger

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    file_handler = RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    # Console handler for development
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    handlers = [file_handler, console_handler]
    _attach(logger, handlers, level)
    if bleak_level is not None:
        _attach(logging.getLogger(BLEAK_LOGGER), handlers, bleak_level)

    return logger

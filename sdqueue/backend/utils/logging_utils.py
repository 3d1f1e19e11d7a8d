"""Logging helpers for backend services."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_LEVEL = logging.INFO
LOG_FILE_NAME = "sdqueue.log"

logger = logging.getLogger("SDQueue")


def setup_logging(log_dir: Path, level: int = DEFAULT_LOG_LEVEL, enable_console: bool = True) -> logging.Logger:
    """Configure logging for backend processes."""
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)

    existing = {type(handler) for handler in logger.handlers}

    if RotatingFileHandler not in existing:
        file_handler = RotatingFileHandler(
            log_dir / LOG_FILE_NAME,
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if enable_console and logging.StreamHandler not in existing:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


class JobLogger:
    """Logger that tags every line with the job id."""

    def __init__(self, job_id: str):
        self.job_id = job_id

    def info(self, message: str, *args) -> None:
        logger.info("[%s] " + message, self.job_id, *args)

    def warning(self, message: str, *args) -> None:
        logger.warning("[%s] " + message, self.job_id, *args)

    def error(self, message: str, *args) -> None:
        logger.error("[%s] " + message, self.job_id, *args)

"""
Local logging for glotian_sync.

Writes the package log to <data_dir>/logs/local-{date}.log and sync events
(runs, conflicts, eviction passes) to sync-events-{date}.log.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from .utils import get_data_home

LOGGER_NAME = "glotian_sync"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _log_dir() -> Path:
    log_dir = get_data_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _today() -> str:
    return datetime.now().strftime("%Y-%m-%d")


def setup_logging(user_id: str = "default", level: str = "INFO") -> logging.Logger:
    """Configure the glotian_sync logger.

    Adds a dated file handler once; adds a stderr handler only at DEBUG.
    Unknown level names fall back to INFO.
    """
    logger = logging.getLogger(LOGGER_NAME)
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    logger.setLevel(numeric_level)

    formatter = logging.Formatter(LOG_FORMAT)

    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        log_file = _log_dir() / f"local-{_today()}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if numeric_level == logging.DEBUG and not any(
        type(h) is logging.StreamHandler for h in logger.handlers
    ):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    logger.debug("Logging configured for user=%s level=%s", user_id, level)
    return logger


def log_sync_event(event_type: str, details: str, user_id: Optional[str] = None) -> None:
    """Append one line to the sync events log."""
    log_file = _log_dir() / f"sync-events-{_today()}.log"
    timestamp = datetime.now().isoformat(timespec="seconds")
    line = f"{timestamp} | {event_type} | user={user_id or 'default'} | {details}\n"
    with open(log_file, "a", encoding="utf-8") as f:
        f.write(line)


def log_sync(user_id: Optional[str], synced: int, failed: int = 0, conflicts: int = 0) -> None:
    log_sync_event(
        "sync",
        f"synced={synced} failed={failed} conflicts={conflicts}",
        user_id=user_id,
    )


def log_eviction(items_removed: int, quota_before: float, quota_after: float) -> None:
    log_sync_event(
        "evict",
        f"removed={items_removed} before={quota_before:.1f}% after={quota_after:.1f}%",
    )

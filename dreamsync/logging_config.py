"""Logging configuration for dreamsync.

Local logs go to <data_home>/logs/:
- local-<date>.log: the regular module loggers under ``dreamsync``
- sync-events-<date>.log: one line per sync/cache event, for auditing
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dreamsync.utils import get_dreamsync_home, truncate_id

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOGGER_NAME = "dreamsync"


def _log_dir() -> Path:
    log_dir = get_dreamsync_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def setup_dreamsync_logging(owner_id: Optional[str] = None, level: str = "INFO") -> logging.Logger:
    """Configure the ``dreamsync`` logger with a dated file handler.

    Args:
        owner_id: Owner the process is working for (recorded in the first line)
        level: Log level name, case-insensitive. Unknown names fall back to INFO.

    Returns:
        The configured ``dreamsync`` logger. Calling this twice does not
        add duplicate handlers.
    """
    logger = logging.getLogger(LOGGER_NAME)
    log_level = getattr(logging, str(level).upper(), None)
    if not isinstance(log_level, int):
        log_level = logging.INFO
    logger.setLevel(log_level)

    formatter = logging.Formatter(LOG_FORMAT)
    log_file = _log_dir() / f"local-{_today()}.log"

    has_file_handler = any(isinstance(h, logging.FileHandler) for h in logger.handlers)
    if not has_file_handler:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if log_level <= logging.DEBUG:
        has_console = any(
            isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
            for h in logger.handlers
        )
        if not has_console:
            console = logging.StreamHandler()
            console.setFormatter(formatter)
            logger.addHandler(console)

    if not has_file_handler:
        logger.debug("Logging initialized for owner=%s", owner_id or "default")
    return logger


def log_sync_event(event_type: str, details: str, owner_id: str = "default") -> None:
    """Append a single event line to the sync-events log."""
    timestamp = datetime.now(timezone.utc).isoformat()
    line = f"{timestamp} | {event_type} | owner={owner_id} | {details}\n"
    try:
        with open(_log_dir() / f"sync-events-{_today()}.log", "a", encoding="utf-8") as f:
            f.write(line)
    except OSError as e:
        logging.getLogger(__name__).debug(f"Could not write sync event: {e}")


def log_sync(
    owner_id: str,
    inserted: int,
    updated: int,
    skipped: int = 0,
    conflicts: int = 0,
    errors: int = 0,
) -> None:
    """Record a completed metadata sync pass."""
    log_sync_event(
        "sync",
        f"inserted={inserted}, updated={updated}, skipped={skipped}, "
        f"conflicts={conflicts}, errors={errors}",
        owner_id=owner_id,
    )


def log_cache(owner_id: str, action: str, record_id: str, filename: Optional[str] = None) -> None:
    """Record a media cache hit, download or adoption."""
    details = f"action={action}, id={truncate_id(record_id)}"
    if filename:
        details += f", file={filename}"
    log_sync_event("cache", details, owner_id=owner_id)


def log_cleanup(owner_id: str, removed: int, kept: int, failed: int = 0) -> None:
    """Record a cache garbage-collection pass."""
    log_sync_event(
        "cleanup", f"removed={removed}, kept={kept}, failed={failed}", owner_id=owner_id
    )

"""Utility helpers shared across dreamsync."""

import os
from pathlib import Path


def get_dreamsync_home() -> Path:
    """Get the dreamsync data directory.

    Uses DREAMSYNC_DATA_DIR when set, otherwise ~/.dreamsync.
    """
    env_dir = os.environ.get("DREAMSYNC_DATA_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".dreamsync"


def truncate_id(record_id: str, length: int = 8) -> str:
    """Shorten a record id for log lines."""
    if not record_id or len(record_id) <= length:
        return record_id
    return f"{record_id[:length]}..."

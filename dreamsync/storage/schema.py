"""SQLite layout for the dream store.

``init_db`` creates or upgrades a database in place. Upgrades only ever
add nullable or defaulted columns, listed in ``COLUMN_ADDITIONS``.
"""

import logging
import os
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 3  # v3: conflict policy provenance on sync_conflicts

# Only these names may be interpolated into SQL text
ALLOWED_TABLES = frozenset({"dreams", "schema_version", "sync_meta", "sync_conflicts"})

# (table, column, DDL type) added after the first release, oldest first
COLUMN_ADDITIONS = (
    # v2: audio capture and generated-video provenance
    ("dreams", "local_audio_path", "TEXT"),
    ("dreams", "is_ai_generated", "INTEGER NOT NULL DEFAULT 0"),
    ("dreams", "original_media_url", "TEXT"),
    ("dreams", "ai_generation_date", "TEXT"),
    # v3
    ("sync_conflicts", "diff_hash", "TEXT"),
    ("sync_conflicts", "policy_decision", "TEXT"),
)


def validate_table_name(table: str) -> str:
    """Return ``table`` if it is a known table, else raise ValueError."""
    if table in ALLOWED_TABLES:
        return table
    raise ValueError(f"Unknown table: {table!r}")


SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Journal records mirrored from the remote collection
CREATE TABLE IF NOT EXISTS dreams (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    media_url TEXT NOT NULL,
    date TEXT,
    dream_date TEXT,
    transcript TEXT,
    tags TEXT,                       -- JSON array
    category TEXT,
    video_style TEXT,
    audio_url TEXT,
    processing_state TEXT NOT NULL DEFAULT 'pending',
    is_processing INTEGER NOT NULL DEFAULT 0,
    processing_progress REAL NOT NULL DEFAULT 0.0,
    processing_error TEXT,
    is_ai_generated INTEGER NOT NULL DEFAULT 0,
    original_media_url TEXT,
    ai_generation_date TEXT,
    local_media_path TEXT,           -- cache filename, never a full path
    local_audio_path TEXT,
    sync_state TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT,
    updated_at TEXT,
    last_synced_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_dreams_owner ON dreams(owner_id);
CREATE INDEX IF NOT EXISTS idx_dreams_owner_date ON dreams(owner_id, dream_date);
CREATE INDEX IF NOT EXISTS idx_dreams_sync_state ON dreams(owner_id, sync_state);

-- Key/value bookkeeping, e.g. last_sync_time:<owner>
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- One row per distinct resolved conflict
CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    record_id TEXT NOT NULL,
    local_version TEXT NOT NULL,     -- JSON
    remote_version TEXT NOT NULL,    -- JSON
    resolution TEXT NOT NULL,        -- local_wins | remote_wins
    resolved_at TEXT NOT NULL,
    diff_hash TEXT,
    policy_decision TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_resolved ON sync_conflicts(resolved_at);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_record ON sync_conflicts(owner_id, record_id);
"""


def init_db(conn: sqlite3.Connection, db_path: Path) -> None:
    """Bring the database at ``db_path`` up to ``SCHEMA_VERSION``."""
    # Columns must exist before the index statements in SCHEMA run
    migrate_schema(conn)
    conn.executescript(SCHEMA)

    conn.execute("DELETE FROM schema_version")
    conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    conn.commit()

    try:
        os.chmod(db_path, 0o600)
    except OSError as e:
        logger.warning(f"Could not restrict permissions on {db_path}: {e}")


def _existing_columns(conn: sqlite3.Connection) -> dict:
    """Map each existing known table to its set of column names."""
    found = {}
    for (name,) in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'"):
        if name in ALLOWED_TABLES:
            rows = conn.execute(f"PRAGMA table_info({validate_table_name(name)})")
            found[name] = {row[1] for row in rows}
    return found


def migrate_schema(conn: sqlite3.Connection) -> int:
    """Add any missing columns to tables created by an older release.

    Returns the number of columns added. A database without a ``dreams``
    table is treated as fresh and left alone.
    """
    columns = _existing_columns(conn)
    if "dreams" not in columns:
        return 0

    added = 0
    for table, column, ddl in COLUMN_ADDITIONS:
        if table not in columns or column in columns[table]:
            continue
        statement = f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"
        try:
            conn.execute(statement)
        except sqlite3.OperationalError as e:
            logger.warning(f"Skipping migration {table}.{column}: {e}")
            continue
        columns[table].add(column)
        added += 1
        logger.debug(f"Added column {table}.{column}")

    if added:
        conn.commit()
        logger.info(f"Schema upgraded: {added} column(s) added")
    return added

"""SQLite-backed local dream store.

The store is a unit of work over an identity map: records returned by
``get``/``fetch_all`` are tracked objects, callers mutate them in place, and
nothing reaches disk until ``save()`` flushes every pending insert, update
and delete in one transaction. A crash before ``save()`` loses the pending
mutations; the next metadata sync re-derives them from the remote collection.
"""

import contextlib
import json
import logging
import sqlite3
import tempfile
import threading
import uuid
from calendar import monthrange
from dataclasses import fields
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from dreamsync.storage.schema import init_db
from dreamsync.types import (
    Dream,
    LocalStoreError,
    ProcessingState,
    SyncConflict,
    SyncState,
    VideoStyle,
    parse_datetime,
    utc_now,
)
from dreamsync.utils import get_dreamsync_home

logger = logging.getLogger(__name__)

DREAM_COLUMNS = tuple(f.name for f in fields(Dream))
DATETIME_COLUMNS = frozenset(
    {"date", "dream_date", "ai_generation_date", "created_at", "updated_at", "last_synced_at"}
)
BOOL_COLUMNS = frozenset({"is_processing", "is_ai_generated"})

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def _sort_key(dream: Dream) -> datetime:
    return dream.dream_date or dream.created_at or _OLDEST


class DreamStore:
    """Local persistent store of Dream records."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = self._resolve_db_path(Path(db_path) if db_path else None)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        # Identity map: id -> tracked record, plus the row it was last persisted as
        self._tracked: Dict[str, Dream] = {}
        self._snapshots: Dict[str, Dict[str, Any]] = {}
        self._staged_inserts: Dict[str, Dream] = {}
        self._staged_deletes: Dict[str, Dream] = {}

        with self._connect() as conn:
            init_db(conn, self.db_path)

    def _resolve_db_path(self, db_path: Optional[Path]) -> Path:
        """Resolve the database path, falling back to temp dir if home is not writable."""
        if db_path is not None:
            return self._validate_db_path(db_path)

        default_path = get_dreamsync_home() / "dreams.db"
        try:
            default_path.parent.mkdir(parents=True, exist_ok=True)
            return self._validate_db_path(default_path)
        except OSError as e:
            fallback_dir = Path(tempfile.gettempdir()) / ".dreamsync"
            logger.warning(
                f"Cannot write to {default_path.parent} ({e}), falling back to {fallback_dir}"
            )
            return self._validate_db_path(fallback_dir / "dreams.db")

    def _validate_db_path(self, db_path: Path) -> Path:
        """Validate database path to prevent path traversal attacks."""
        try:
            resolved_path = db_path.resolve()
            safe_roots = [
                Path.home().resolve(),
                Path("/tmp").resolve(),
                Path(tempfile.gettempdir()).resolve(),
                get_dreamsync_home().resolve(),
            ]
            if not any(resolved_path.is_relative_to(root) for root in safe_roots):
                raise ValueError("Database path must be within user home or temp directory")
            return resolved_path
        except (OSError, ValueError) as e:
            logger.error(f"Invalid database path: {e}")
            raise ValueError(f"Invalid database path: {e}")

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Context manager that handles transactions AND closes connection.

        Commits on success, rolls back on exception, always closes.
        ``sqlite3.Error`` is re-raised as ``LocalStoreError``.
        """
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise LocalStoreError(f"Could not open {self.db_path}: {e}", cause=e) from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise LocalStoreError(f"Local store operation failed: {e}", cause=e) from e
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def close(self):
        """Close any resources.

        Connections are per-operation, so this only drops tracked records.
        """
        with self._lock:
            self._tracked.clear()
            self._snapshots.clear()
            self._staged_inserts.clear()
            self._staged_deletes.clear()

    # === Row mapping ===

    def _dream_to_row(self, dream: Dream) -> Dict[str, Any]:
        row: Dict[str, Any] = {}
        for column in DREAM_COLUMNS:
            value = getattr(dream, column)
            if column in DATETIME_COLUMNS:
                value = value.isoformat() if value else None
            elif column in BOOL_COLUMNS:
                value = 1 if value else 0
            elif column == "tags":
                value = json.dumps(list(value or []))
            elif column == "processing_progress":
                value = float(value or 0.0)
            elif isinstance(value, (SyncState, ProcessingState, VideoStyle)):
                value = value.value
            row[column] = value
        return row

    def _row_to_dream(self, row: Any) -> Dream:
        values: Dict[str, Any] = {}
        for column in DREAM_COLUMNS:
            value = row[column]
            if column in DATETIME_COLUMNS:
                value = parse_datetime(value)
            elif column in BOOL_COLUMNS:
                value = bool(value)
            elif column == "tags":
                value = self._from_json(value) or []
            elif column == "processing_progress":
                value = float(value or 0.0)
            elif column == "sync_state":
                value = SyncState.parse(value)
            elif column == "processing_state":
                value = ProcessingState.parse(value)
            elif column == "video_style":
                value = VideoStyle.parse(value)
            values[column] = value
        return Dream(**values)

    def _from_json(self, s: Optional[str]) -> Any:
        if not s:
            return None
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            return None

    def _track(self, row: Any) -> Dream:
        """Return the tracked record for a row, creating it on first sight."""
        record_id = row["id"]
        tracked = self._tracked.get(record_id)
        if tracked is not None:
            return tracked
        dream = self._row_to_dream(row)
        self._tracked[record_id] = dream
        self._snapshots[record_id] = self._dream_to_row(dream)
        return dream

    # === Unit of work ===

    def get(self, record_id: str) -> Optional[Dream]:
        """Return the tracked record for an id, or None."""
        with self._lock:
            if record_id in self._staged_deletes:
                return None
            if record_id in self._staged_inserts:
                return self._staged_inserts[record_id]
            if record_id in self._tracked:
                return self._tracked[record_id]
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM dreams WHERE id = ?", (record_id,)).fetchone()
            return self._track(row) if row else None

    def fetch_all(
        self,
        owner_id: Optional[str] = None,
        predicate: Optional[Callable[[Dream], bool]] = None,
    ) -> List[Dream]:
        """Fetch tracked records, newest dream date first.

        Staged inserts are included and staged deletes excluded, so callers
        see the unit of work's view rather than the last flushed state.
        """
        with self._lock:
            with self._connect() as conn:
                if owner_id is None:
                    rows = conn.execute("SELECT * FROM dreams").fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM dreams WHERE owner_id = ?", (owner_id,)
                    ).fetchall()

            results = [self._track(row) for row in rows if row["id"] not in self._staged_deletes]
            results.extend(
                dream
                for dream in self._staged_inserts.values()
                if owner_id is None or dream.owner_id == owner_id
            )
            if predicate is not None:
                results = [dream for dream in results if predicate(dream)]
            results.sort(key=_sort_key, reverse=True)
            return results

    def fetch_between(self, owner_id: str, start: datetime, end: datetime) -> List[Dream]:
        """Fetch an owner's dreams whose dream date falls in [start, end)."""

        def in_range(dream: Dream) -> bool:
            return dream.dream_date is not None and start <= dream.dream_date < end

        return self.fetch_all(owner_id, in_range)

    def fetch_for_month(self, owner_id: str, day: datetime) -> List[Dream]:
        """Fetch an owner's dreams in the calendar month containing ``day``."""
        tz = day.tzinfo or timezone.utc
        start = datetime(day.year, day.month, 1, tzinfo=tz)
        end = start + timedelta(days=monthrange(day.year, day.month)[1])
        return self.fetch_between(owner_id, start, end)

    def insert(self, dream: Dream) -> Dream:
        """Stage a new record. It is written on the next ``save()``.

        Raises:
            LocalStoreError: If a record with the same id already exists.
        """
        with self._lock:
            if (
                dream.id in self._staged_inserts
                or dream.id in self._staged_deletes
                or dream.id in self._tracked
            ):
                raise LocalStoreError(f"Dream {dream.id} already exists")
            with self._connect() as conn:
                exists = conn.execute("SELECT 1 FROM dreams WHERE id = ?", (dream.id,)).fetchone()
            if exists:
                raise LocalStoreError(f"Dream {dream.id} already exists")
            self._staged_inserts[dream.id] = dream
            return dream

    def delete(self, dream: Dream) -> None:
        """Stage a delete. Cached media files are left for the cleanup pass."""
        with self._lock:
            if self._staged_inserts.pop(dream.id, None) is not None:
                return
            self._staged_deletes[dream.id] = dream

    def _dirty(self) -> List[Dream]:
        return [
            dream
            for record_id, dream in self._tracked.items()
            if record_id not in self._staged_deletes
            and self._dream_to_row(dream) != self._snapshots.get(record_id)
        ]

    @property
    def has_changes(self) -> bool:
        with self._lock:
            return bool(self._staged_inserts or self._staged_deletes or self._dirty())

    def save(self) -> int:
        """Flush pending mutations in a single transaction.

        Returns:
            Number of rows written. Unchanged records are not rewritten, so a
            flush with nothing pending touches no rows.

        Raises:
            LocalStoreError: If the transaction fails. Pending mutations are
                kept so the caller can retry or ``rollback()``.
        """
        with self._lock:
            inserts = list(self._staged_inserts.values())
            updates = self._dirty()
            deletes = list(self._staged_deletes.values())
            if not (inserts or updates or deletes):
                return 0

            columns = ", ".join(DREAM_COLUMNS)
            placeholders = ", ".join("?" for _ in DREAM_COLUMNS)
            assignments = ", ".join(f"{c} = ?" for c in DREAM_COLUMNS if c != "id")

            written = 0
            with self._connect() as conn:
                for dream in inserts:
                    row = self._dream_to_row(dream)
                    conn.execute(
                        f"INSERT INTO dreams ({columns}) VALUES ({placeholders})",
                        [row[c] for c in DREAM_COLUMNS],
                    )
                    written += 1
                for dream in updates:
                    row = self._dream_to_row(dream)
                    cursor = conn.execute(
                        f"UPDATE dreams SET {assignments} WHERE id = ?",
                        [row[c] for c in DREAM_COLUMNS if c != "id"] + [dream.id],
                    )
                    written += cursor.rowcount
                for dream in deletes:
                    cursor = conn.execute("DELETE FROM dreams WHERE id = ?", (dream.id,))
                    written += cursor.rowcount

            for dream in inserts + updates:
                self._tracked[dream.id] = dream
                self._snapshots[dream.id] = self._dream_to_row(dream)
            for dream in deletes:
                self._tracked.pop(dream.id, None)
                self._snapshots.pop(dream.id, None)
            self._staged_inserts.clear()
            self._staged_deletes.clear()

            logger.debug(
                f"Flushed {len(inserts)} inserts, {len(updates)} updates, "
                f"{len(deletes)} deletes"
            )
            return written

    @contextlib.contextmanager
    def transaction(self, owner_id: Optional[str] = None) -> Iterator["DreamStore"]:
        """Run a read-modify-save sequence as one unit.

        Other threads' reads, inserts and flushes wait until the block
        exits, so they never see or persist its half-applied mutations.
        If the block raises, the mutations it made are undone and any that
        were pending before it started are left alone. ``save()`` belongs at
        the end of the block.

        With ``owner_id``, only that owner's records are restored on failure.
        """
        with self._lock:
            inserts = dict(self._staged_inserts)
            deletes = dict(self._staged_deletes)
            rows = {record_id: self._dream_to_row(d) for record_id, d in self._tracked.items()}
            try:
                yield self
            except BaseException:
                self._restore(inserts, deletes, rows, owner_id)
                raise

    def _restore(
        self,
        inserts: Dict[str, Dream],
        deletes: Dict[str, Dream],
        rows: Dict[str, Dict[str, Any]],
        owner_id: Optional[str],
    ) -> None:
        for record_id, dream in self._tracked.items():
            if owner_id is not None and dream.owner_id != owner_id:
                continue
            row = rows.get(record_id, self._snapshots.get(record_id))
            if row is None or self._dream_to_row(dream) == row:
                continue
            restored = self._row_to_dream(row)
            for column in DREAM_COLUMNS:
                setattr(dream, column, getattr(restored, column))
        self._staged_inserts = inserts
        self._staged_deletes = deletes
        logger.debug("Transaction rolled back")

    def rollback(self) -> None:
        """Discard pending mutations and restore tracked records in place."""
        with self._lock:
            for record_id, snapshot in self._snapshots.items():
                dream = self._tracked.get(record_id)
                if dream is None or self._dream_to_row(dream) == snapshot:
                    continue
                restored = self._row_to_dream(snapshot)
                for column in DREAM_COLUMNS:
                    setattr(dream, column, getattr(restored, column))
            self._staged_inserts.clear()
            self._staged_deletes.clear()

    # === Sync Metadata ===

    def _get_sync_meta(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def _set_sync_meta(self, key: str, value: str):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, utc_now()),
            )

    def get_last_sync_time(self, owner_id: str) -> Optional[datetime]:
        """Get the timestamp of the owner's last successful sync."""
        value = self._get_sync_meta(f"last_sync_time:{owner_id}")
        return parse_datetime(value) if value else None

    def set_last_sync_time(self, owner_id: str, when: datetime) -> None:
        self._set_sync_meta(f"last_sync_time:{owner_id}", when.isoformat())

    # === Conflict Management ===

    def save_sync_conflict(self, conflict: SyncConflict) -> str:
        """Save a sync conflict record. Deduplicates by diff_hash when available."""
        with self._connect() as conn:
            if conflict.diff_hash:
                existing = conn.execute(
                    "SELECT id FROM sync_conflicts WHERE owner_id = ? AND diff_hash = ?",
                    (conflict.owner_id, conflict.diff_hash),
                ).fetchone()
                if existing:
                    return existing["id"]

            conn.execute(
                """INSERT INTO sync_conflicts
                   (id, owner_id, record_id, local_version, remote_version,
                    resolution, resolved_at, diff_hash, policy_decision)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    conflict.id or str(uuid.uuid4()),
                    conflict.owner_id,
                    conflict.record_id,
                    json.dumps(conflict.local_version),
                    json.dumps(conflict.remote_version),
                    conflict.resolution,
                    conflict.resolved_at.isoformat(),
                    conflict.diff_hash,
                    conflict.policy_decision,
                ),
            )
        return conflict.id

    def get_sync_conflicts(
        self, owner_id: Optional[str] = None, limit: int = 100
    ) -> List[SyncConflict]:
        """Get recent sync conflict history, newest first."""
        query = """SELECT id, owner_id, record_id, local_version, remote_version,
                          resolution, resolved_at, diff_hash, policy_decision
                   FROM sync_conflicts"""
        params: List[Any] = []
        if owner_id is not None:
            query += " WHERE owner_id = ?"
            params.append(owner_id)
        query += " ORDER BY resolved_at DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            SyncConflict(
                id=row["id"],
                record_id=row["record_id"],
                owner_id=row["owner_id"],
                local_version=json.loads(row["local_version"]),
                remote_version=json.loads(row["remote_version"]),
                resolution=row["resolution"],
                resolved_at=parse_datetime(row["resolved_at"]) or datetime.now(timezone.utc),
                diff_hash=row["diff_hash"],
                policy_decision=row["policy_decision"],
            )
            for row in rows
        ]

    def clear_sync_conflicts(self, before: Optional[datetime] = None) -> int:
        """Clear sync conflict history."""
        with self._connect() as conn:
            if before:
                cursor = conn.execute(
                    "DELETE FROM sync_conflicts WHERE resolved_at < ?", (before.isoformat(),)
                )
            else:
                cursor = conn.execute("DELETE FROM sync_conflicts")
            return cursor.rowcount

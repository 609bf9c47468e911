"""Metadata reconciler for dreamsync.

Reconciler pulls an owner's remote documents and merges them into the local
store by id. Merges are one-directional (remote -> local): local records that
are absent remotely are never deleted, and device-local cache state is never
overwritten. All mutations from a pass are flushed in one transaction, and no
other writer can flush or discard them halfway through.
"""

import hashlib
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from dreamsync.core.documents import dream_from_document, dream_to_document
from dreamsync.core.locks import KeyedLock
from dreamsync.core.validation import validate_owner_id
from dreamsync.logging_config import log_sync
from dreamsync.storage.cloud import RemoteMirror
from dreamsync.storage.sqlite import DreamStore
from dreamsync.types import (
    CONTENT_FIELDS,
    ConflictPolicy,
    Dream,
    RemoteDataError,
    SyncConflict,
    SyncResult,
    SyncState,
    utc_now_dt,
)
from dreamsync.utils import truncate_id

logger = logging.getLogger(__name__)

# Merge outcomes
UNCHANGED = "unchanged"
UPDATED = "updated"
KEPT_LOCAL = "kept_local"


class Reconciler:
    """Merges remote dream documents into the local store.

    Args:
        store: Local record store.
        mirror: Remote document collection client.
        policy: How a record changed on both sides is resolved.
        clock: Source of "now", injectable for tests.
    """

    def __init__(
        self,
        store: DreamStore,
        mirror: RemoteMirror,
        policy: ConflictPolicy = ConflictPolicy.LAST_WRITER_WINS,
        clock: Callable[[], datetime] = utc_now_dt,
    ):
        self._store = store
        self._mirror = mirror
        self.policy = policy
        self._clock = clock
        self._owner_locks = KeyedLock()

    def is_syncing(self, owner_id: str) -> bool:
        return self._owner_locks.is_held(owner_id)

    def sync_metadata(self, owner_id: str) -> SyncResult:
        """Pull the owner's remote documents into the local store.

        A second call for the same owner waits for the first to finish.

        Raises:
            NoNetworkError: Connectivity is unavailable.
            NetworkError: Any other transport failure.
            RemoteDataError: The remote response is not a document list.
            LocalStoreError: The local flush failed; pending mutations are
                rolled back.
        """
        owner_id = validate_owner_id(owner_id)
        with self._owner_locks.hold(owner_id):
            return self._sync_owner(owner_id)

    def _sync_owner(self, owner_id: str) -> SyncResult:
        result = SyncResult(owner_id=owner_id)
        documents = self._mirror.fetch_all(owner_id)
        now = self._clock()

        with self._store.transaction(owner_id):
            local_by_id = {dream.id: dream for dream in self._store.fetch_all(owner_id)}
            for doc in documents:
                self._apply_document(doc, owner_id, local_by_id, now, result)
            written = self._store.save()

        for conflict in result.conflicts:
            self.save_conflict(conflict)
        self._store.set_last_sync_time(owner_id, now)

        logger.info(
            f"Synced owner {owner_id}: {result.inserted} inserted, {result.updated} updated, "
            f"{result.unchanged} unchanged, {result.skipped} skipped, "
            f"{result.conflict_count} conflicts ({written} rows written)"
        )
        log_sync(
            owner_id,
            inserted=result.inserted,
            updated=result.updated,
            skipped=result.skipped,
            conflicts=result.conflict_count,
            errors=len(result.errors),
        )
        return result

    def _apply_document(
        self,
        doc: Any,
        owner_id: str,
        local_by_id: Dict[str, Dream],
        now: datetime,
        result: SyncResult,
    ) -> None:
        try:
            remote = dream_from_document(doc)
        except RemoteDataError as e:
            logger.warning(f"Skipping malformed remote document: {e}")
            result.skipped += 1
            result.errors.append(str(e))
            return

        if remote.owner_id != owner_id:
            logger.warning(
                f"Skipping document {truncate_id(remote.id)} owned by {remote.owner_id}, "
                f"not {owner_id}"
            )
            result.skipped += 1
            result.errors.append(f"Document {remote.id} belongs to another owner")
            return

        local = local_by_id.get(remote.id)
        if local is None:
            existing = self._store.get(remote.id)
            if existing is not None:
                # Same id held locally by another owner
                logger.warning(
                    f"Skipping document {truncate_id(remote.id)}: id is used by a local "
                    f"record of another owner"
                )
                result.skipped += 1
                result.errors.append(f"Document {remote.id} collides with another owner's record")
                return

            remote.sync_state = SyncState.SYNCED
            remote.last_synced_at = now
            self._store.insert(remote)
            local_by_id[remote.id] = remote
            result.inserted += 1
            return

        outcome, conflict = self._merge(local, remote, now)
        if outcome == UPDATED:
            result.updated += 1
        else:
            result.unchanged += 1
        if conflict is not None:
            result.conflicts.append(conflict)

    # === Merge ===

    def _merge_fields(self, local: Dream) -> Tuple[str, ...]:
        """Fields a remote document may overwrite on this local record."""
        if local.local_media_path:
            return CONTENT_FIELDS
        return CONTENT_FIELDS + ("media_url",)

    def _merge(
        self, local: Dream, remote: Dream, now: datetime
    ) -> Tuple[str, Optional[SyncConflict]]:
        """Merge one remote record into its local counterpart in place."""
        merge_fields = self._merge_fields(local)
        if all(getattr(local, f) == getattr(remote, f) for f in merge_fields):
            return UNCHANGED, None

        local_time = local.updated_at
        remote_time = remote.updated_at

        if self.policy == ConflictPolicy.REMOTE_WINS:
            conflict = None
            if local_time and remote_time and local_time > remote_time:
                conflict = self._create_conflict(
                    local, remote, "remote_wins", policy_decision="remote_always_wins"
                )
            self._apply(local, remote, merge_fields, now)
            return UPDATED, conflict

        if local_time is None or remote_time is None or remote_time > local_time:
            self._apply(local, remote, merge_fields, now)
            return UPDATED, None

        if local_time > remote_time:
            logger.info(
                f"Keeping newer local version of {truncate_id(local.id)} "
                f"(local {local_time.isoformat()} > remote {remote_time.isoformat()})"
            )
            conflict = self._create_conflict(
                local, remote, "local_wins", policy_decision="newer_local_timestamp"
            )
            return KEPT_LOCAL, conflict

        # Equal timestamps with different content: the remote collection is
        # the source of truth for metadata.
        conflict = self._create_conflict(
            local, remote, "remote_wins", policy_decision="equal_timestamp_remote_preferred"
        )
        self._apply(local, remote, merge_fields, now)
        return UPDATED, conflict

    def _apply(self, local: Dream, remote: Dream, merge_fields: Tuple[str, ...], now: datetime):
        for name in merge_fields:
            value = getattr(remote, name)
            setattr(local, name, list(value) if isinstance(value, list) else value)
        local.last_synced_at = now

    # === Conflicts ===

    def _create_conflict(
        self,
        local: Dream,
        remote: Dream,
        resolution: str,
        *,
        policy_decision: Optional[str] = None,
    ) -> SyncConflict:
        local_version = dream_to_document(local)
        remote_version = dream_to_document(remote)
        return SyncConflict(
            id=str(uuid.uuid4()),
            record_id=local.id,
            owner_id=local.owner_id,
            local_version=local_version,
            remote_version=remote_version,
            resolution=resolution,
            resolved_at=self._clock(),
            policy_decision=policy_decision,
            diff_hash=self._build_conflict_hash(local_version, remote_version),
        )

    def _build_conflict_hash(
        self, local_version: Dict[str, Any], remote_version: Dict[str, Any]
    ) -> str:
        """Build a deterministic hash so a repeated conflict is recorded once."""
        payload = {"local": local_version, "remote": remote_version}
        return hashlib.sha256(
            json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        ).hexdigest()

    def save_conflict(self, conflict: SyncConflict) -> None:
        """Persist a conflict. Failure to record history never fails the sync."""
        try:
            self._store.save_sync_conflict(conflict)
        except Exception as e:
            logger.warning(
                f"Could not record conflict for {conflict.record_id}: {e}", exc_info=True
            )

    def get_sync_conflicts(
        self, owner_id: Optional[str] = None, limit: int = 100
    ) -> List[SyncConflict]:
        return self._store.get_sync_conflicts(owner_id=owner_id, limit=limit)

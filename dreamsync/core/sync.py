"""Synchronization operations for DreamSync."""

import logging
from typing import Any, Dict, List, Optional

from dreamsync.types import (
    DreamSyncError,
    NoNetworkError,
    SyncConflict,
    SyncError,
    SyncResult,
    SyncState,
)

logger = logging.getLogger(__name__)


class SyncMixin:
    """Metadata sync operations for DreamSync."""

    def sync_metadata(self, owner_id: str) -> SyncResult:
        """Pull the owner's remote dream documents into the local store.

        Raises:
            SyncError: NoNetworkError, NetworkError, RemoteDataError or
                LocalStoreError. Nothing is retried.
        """
        if self._reconciler is None:
            raise SyncError("Cloud sync is not configured")
        return self._reconciler.sync_metadata(owner_id)

    def get_sync_conflicts(
        self, owner_id: Optional[str] = None, limit: int = 100
    ) -> List[SyncConflict]:
        """Recent conflicts the reconciler resolved, newest first."""
        return self._storage.get_sync_conflicts(owner_id=owner_id, limit=limit)

    def sync_status(self, owner_id: str) -> Dict[str, Any]:
        """Get the owner's sync status.

        Returns:
            Counts by sync state and cache presence, plus the last sync time.
        """
        dreams = self._storage.fetch_all(owner_id)
        by_state = {state.value: 0 for state in SyncState}
        for dream in dreams:
            by_state[dream.sync_state.value] += 1
        last_sync = self._storage.get_last_sync_time(owner_id)

        return {
            "owner_id": owner_id,
            "total": len(dreams),
            "by_state": by_state,
            "pending": by_state[SyncState.PENDING.value] + by_state[SyncState.FAILED.value],
            "cached": sum(1 for dream in dreams if self._cache.is_local(dream)),
            "last_sync": last_sync.isoformat() if last_sync else None,
            "conflicts": len(self._storage.get_sync_conflicts(owner_id=owner_id)),
            "cloud_configured": self._mirror is not None,
            "syncing": self._reconciler.is_syncing(owner_id) if self._reconciler else False,
        }

    @staticmethod
    def describe_error(exc: BaseException) -> Dict[str, Any]:
        """Turn an error into what a user should see.

        ``offline`` is set only for a missing connection, so callers can show
        an offline indicator instead of an alarm.
        """
        if isinstance(exc, DreamSyncError):
            message = exc.user_message
        else:
            message = DreamSyncError.user_message
        return {
            "message": message,
            "offline": isinstance(exc, NoNetworkError),
            "error": type(exc).__name__,
        }

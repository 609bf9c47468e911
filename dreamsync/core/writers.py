"""Dream write and query operations for DreamSync."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import unquote, urlparse

from dreamsync.core.validation import sanitize_string, validate_owner_id
from dreamsync.storage.cloud import BlobStore
from dreamsync.types import (
    Dream,
    LocalStoreError,
    NoNetworkError,
    PushResult,
    SyncError,
    SyncState,
    utc_now_dt,
)
from dreamsync.utils import truncate_id

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 10000


class WritersMixin:
    """Create, upload, delete and query dreams."""

    def create_dream(
        self,
        owner_id: str,
        title: str,
        description: str,
        media_file: Optional[Path] = None,
        media_url: Optional[str] = None,
        dream_date: Optional[datetime] = None,
        **content: Any,
    ) -> Dream:
        """Record a new dream locally in pending state.

        With ``media_file`` the recording is copied into the cache and the
        record gets a ``file://`` placeholder URL until it is uploaded.

        Args:
            owner_id: Owning user.
            title: Dream title.
            description: Free-text description.
            media_file: Freshly recorded video on this device.
            media_url: Remote media URL, when the video already lives remotely.
            dream_date: Night the dream happened (default now).
            **content: Other content fields (transcript, tags, category, ...).
        """
        owner_id = validate_owner_id(owner_id)
        title = sanitize_string(title, "title", MAX_TITLE_LENGTH)
        description = sanitize_string(description, "description", MAX_DESCRIPTION_LENGTH, False)
        if media_file is None and not media_url:
            raise ValueError("Either media_file or media_url is required")

        if media_file is not None:
            media_file = Path(media_file)
            if not media_file.is_file():
                raise ValueError(f"Media file not found: {media_file}")
            media_url = media_file.resolve().as_uri()

        dream = Dream.new(owner_id, title, description, media_url, dream_date=dream_date, **content)
        self._storage.insert(dream)
        if media_file is not None:
            # adopt() flushes the staged insert together with the filename
            self._cache.adopt(dream, media_file)
        else:
            self._storage.save()

        logger.info(f"Created dream {truncate_id(dream.id)} for owner {owner_id}")
        return dream

    def _tracked(self, dream: Dream) -> Dream:
        tracked = self._storage.get(dream.id)
        if tracked is None:
            raise LocalStoreError(f"Dream {dream.id} is not in the local store")
        return tracked

    def _local_media_file(self, dream: Dream) -> Optional[Path]:
        """The file to upload for a dream whose media has not left the device."""
        if self._cache.is_local(dream):
            return self._cache.local_path(dream)
        parsed = urlparse(dream.media_url)
        if parsed.scheme == "file" and dream.last_synced_at is None:
            path = Path(unquote(parsed.path))
            return path if path.is_file() else None
        return None

    def upload_dream(self, dream: Dream) -> Dream:
        """Upload a dream's media (if still local) and write its document.

        Moves the record through ``uploading`` to ``synced``, or to
        ``failed`` when any step raises.
        """
        if self._mirror is None:
            raise SyncError("Cloud sync is not configured")
        tracked = self._tracked(dream)

        tracked.sync_state = SyncState.UPLOADING
        self._storage.save()
        try:
            if urlparse(tracked.media_url).scheme == "file":
                if self._blobs is None:
                    raise SyncError("Cloud storage is not configured")
                source = self._local_media_file(tracked)
                if source is None:
                    raise SyncError(f"No local media to upload for {tracked.id}")
                object_path = BlobStore.object_path(
                    tracked.owner_id,
                    self._cache.kind,
                    tracked.id,
                    source.suffix.lstrip(".") or "mp4",
                )
                tracked.media_url = self._blobs.upload(source, object_path)
                tracked.sync_state = SyncState.UPLOADED
                self._storage.save()

            self._mirror.put(tracked)
        except SyncError:
            tracked.sync_state = SyncState.FAILED
            self._storage.save()
            raise

        tracked.sync_state = SyncState.SYNCED
        tracked.last_synced_at = utc_now_dt()
        self._storage.save()
        logger.info(f"Uploaded dream {truncate_id(tracked.id)}")
        return tracked

    def push_pending(self, owner_id: str) -> PushResult:
        """Upload every pending or failed dream of the owner.

        Best effort: a failing dream is counted and the rest continue. Stops
        early when the connection is gone.
        """
        result = PushResult()
        pending = self._storage.fetch_all(
            owner_id,
            lambda d: d.sync_state in (SyncState.PENDING, SyncState.FAILED),
        )
        for dream in pending:
            try:
                self.upload_dream(dream)
                result.pushed += 1
            except NoNetworkError as e:
                logger.warning(f"Push stopped, no network connection: {e}")
                result.failed += 1
                result.errors.append(f"{dream.id}: {e}")
                break
            except SyncError as e:
                logger.error(f"Failed to push dream {dream.id}: {e}", exc_info=True)
                result.failed += 1
                result.errors.append(f"{dream.id}: {e}")
        return result

    def delete_dream(self, dream: Dream) -> None:
        """Delete a dream remotely (if it was ever uploaded) and locally.

        Its cached files are removed by the next ``cleanup`` pass.
        """
        tracked = self._tracked(dream)
        if tracked.sync_state != SyncState.PENDING or tracked.last_synced_at is not None:
            if self._mirror is None:
                raise SyncError("Cloud sync is not configured")
            self._mirror.delete(tracked.id)
        self._storage.delete(tracked)
        self._storage.save()
        logger.info(f"Deleted dream {truncate_id(tracked.id)}")

    # === Queries ===

    def dreams(self, owner_id: str) -> List[Dream]:
        """The owner's dreams, newest dream date first."""
        return self._storage.fetch_all(owner_id)

    def dreams_between(self, owner_id: str, start: datetime, end: datetime) -> List[Dream]:
        return self._storage.fetch_between(owner_id, start, end)

    def dreams_for_month(self, owner_id: str, day: datetime) -> List[Dream]:
        return self._storage.fetch_for_month(owner_id, day)

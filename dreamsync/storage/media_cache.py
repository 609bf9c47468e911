"""On-device media cache for dreamsync.

Files live at ``<root>/<kind>/<owner_id>/<filename>`` and records store only
the bare filename, so the cache survives moves of the data directory.
Downloads are staged in ``<root>/.incoming/`` and moved into place once
complete; the garbage-collection pass never looks there.
"""

import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

from dreamsync.core.locks import KeyedLock
from dreamsync.core.validation import validate_media_filename, validate_owner_id
from dreamsync.logging_config import log_cache, log_cleanup
from dreamsync.storage.cloud import BlobStore
from dreamsync.storage.sqlite import DreamStore
from dreamsync.types import (
    CacheError,
    CleanupResult,
    DownloadCancelledError,
    DownloadFailedError,
    Dream,
    DreamSyncError,
    FileNotFoundAfterDownloadError,
)
from dreamsync.utils import get_dreamsync_home, truncate_id

logger = logging.getLogger(__name__)

DEFAULT_KIND = "dreams"
DEFAULT_EXTENSION = ".mp4"
INCOMING_DIR = ".incoming"


def _is_file_url(url: str) -> bool:
    try:
        return urlparse(url).scheme == "file"
    except ValueError:
        return False


class MediaCache:
    """Materializes and garbage-collects local copies of dream media.

    Args:
        store: Local record store the cache writes filenames back into.
        blobs: Blob store client used for downloads (None when cloud storage
            is not configured; downloads then fail).
        root: Cache root directory (default ``<data_home>/media``).
        kind: Media kind, the first path level under the root.
    """

    def __init__(
        self,
        store: DreamStore,
        blobs: Optional[BlobStore],
        root: Optional[Path] = None,
        kind: str = DEFAULT_KIND,
    ):
        self._store = store
        self._blobs = blobs
        self.root = Path(root) if root else get_dreamsync_home() / "media"
        self.kind = validate_media_filename(kind)
        self._record_locks = KeyedLock()
        # Held while a file is moved into place and its filename persisted,
        # and for the whole of a cleanup pass.
        self._commit_lock = threading.Lock()

    # === Paths ===

    def owner_dir(self, owner_id: str) -> Path:
        return self.root / self.kind / validate_owner_id(owner_id)

    def local_path(self, record: Dream) -> Optional[Path]:
        """Path the record's cached media would live at, or None if unset."""
        if not record.local_media_path:
            return None
        return self.owner_dir(record.owner_id) / validate_media_filename(record.local_media_path)

    def filename_for(self, record: Dream) -> str:
        """Cache filename for a record: the media URL's last path component.

        Falls back to ``<id>.mp4`` when the URL has no usable filename.
        """
        try:
            path = unquote(urlparse(record.media_url).path or "")
        except ValueError:
            path = ""
        candidate = path.rstrip("/").rsplit("/", 1)[-1]
        if self._is_valid_filename(candidate):
            return candidate
        fallback = f"{record.id}{DEFAULT_EXTENSION}"
        if self._is_valid_filename(fallback):
            return fallback
        raise CacheError(f"Cannot derive a cache filename for {record.id}")

    @staticmethod
    def _is_valid_filename(name: str) -> bool:
        try:
            return validate_media_filename(name) == name
        except ValueError:
            return False

    # === Queries ===

    def is_local(self, record: Dream) -> bool:
        """Whether the record's media is cached. No side effects, no network."""
        try:
            path = self.local_path(record)
        except ValueError:
            return False
        return path is not None and path.is_file()

    # === Materialization ===

    def ensure_local(self, record: Dream, cancel: Optional[threading.Event] = None) -> Path:
        """Return the local path of the record's media, downloading it if needed.

        Concurrent calls for the same record are serialized; the second one
        sees the first one's file and returns without touching the network.

        Args:
            record: The dream whose media is needed.
            cancel: Optional event; setting it abandons the download.

        Raises:
            DownloadFailedError: The download failed. ``local_media_path``
                is left untouched.
            DownloadCancelledError: ``cancel`` was set. Partial bytes are
                discarded.
            FileNotFoundAfterDownloadError: The file is absent after a
                download reported success.
        """
        with self._record_locks.hold(record.id):
            tracked = self._store.get(record.id)
            if tracked is None:
                raise CacheError(f"Dream {record.id} is not in the local store")

            if self.is_local(tracked):
                path = self.local_path(tracked)
                record.local_media_path = tracked.local_media_path
                logger.debug(f"Cache hit for {truncate_id(record.id)}: {path.name}")
                return path

            if tracked.local_media_path:
                logger.info(
                    f"Cached media for {truncate_id(record.id)} is missing "
                    f"({tracked.local_media_path}), downloading again"
                )
            return self._download(record, tracked, cancel)

    def _download(
        self, record: Dream, tracked: Dream, cancel: Optional[threading.Event]
    ) -> Path:
        if self._blobs is None:
            raise DownloadFailedError(f"Cloud storage is not configured, cannot fetch {record.id}")
        # file:// is only a placeholder for a recording that has never left this device
        if _is_file_url(tracked.media_url) and tracked.last_synced_at is not None:
            raise DownloadFailedError(f"Refusing local file URL on synced dream {record.id}")
        filename = self.filename_for(tracked)
        target = self.owner_dir(tracked.owner_id) / filename

        staged = self._stage_file()
        try:
            try:
                size = self._blobs.download(tracked.media_url, staged, cancel)
            except DownloadCancelledError:
                raise
            except (DreamSyncError, OSError) as e:
                logger.warning(f"Download failed for {truncate_id(record.id)}: {e}")
                raise DownloadFailedError(
                    f"Could not download media for {record.id}: {e}", cause=e
                ) from e
            if cancel is not None and cancel.is_set():
                raise DownloadCancelledError(f"Download for {record.id} cancelled")

            self._commit(tracked, staged, target, "local_media_path")
        except BaseException:
            staged.unlink(missing_ok=True)
            raise

        record.local_media_path = tracked.local_media_path
        if not target.is_file():
            raise FileNotFoundAfterDownloadError(
                f"Media for {record.id} missing at {target} after download"
            )

        logger.info(f"Cached {filename} for {truncate_id(record.id)} ({size} bytes)")
        log_cache(tracked.owner_id, "download", record.id, filename)
        return target

    def adopt(self, record: Dream, source_file: Path, audio: bool = False) -> Path:
        """Copy a freshly recorded file into the cache and reference it.

        The recording flow keeps its own copy before any upload, so playback
        never needs the network for media captured on this device.
        """
        source_file = Path(source_file)
        field_name = "local_audio_path" if audio else "local_media_path"
        suffix = source_file.suffix or (".m4a" if audio else DEFAULT_EXTENSION)
        filename = validate_media_filename(f"{record.id}{suffix}")

        with self._record_locks.hold(record.id):
            tracked = self._store.get(record.id) or record
            target = self.owner_dir(tracked.owner_id) / filename
            staged = self._stage_file()
            try:
                shutil.copyfile(source_file, staged)
                self._commit(tracked, staged, target, field_name)
            except OSError as e:
                staged.unlink(missing_ok=True)
                raise CacheError(f"Could not add {source_file} to the cache: {e}", cause=e) from e
            except BaseException:
                staged.unlink(missing_ok=True)
                raise

        setattr(record, field_name, filename)
        log_cache(tracked.owner_id, "adopt", record.id, filename)
        return target

    def _stage_file(self) -> Path:
        incoming = self.root / INCOMING_DIR
        incoming.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(dir=incoming, prefix="dl-", suffix=".part")
        os.close(fd)
        return Path(name)

    def _commit(self, tracked: Dream, staged: Path, target: Path, field_name: str) -> None:
        """Move a staged file into place and persist its filename."""
        target.parent.mkdir(parents=True, exist_ok=True)
        with self._commit_lock:
            os.replace(staged, target)
            previous = getattr(tracked, field_name)
            setattr(tracked, field_name, target.name)
            try:
                self._store.save()
            except BaseException:
                setattr(tracked, field_name, previous)
                raise

    # === Garbage collection ===

    def cleanup(self, owner_id: str) -> CleanupResult:
        """Delete every cached file of the owner that no local record references.

        Individual deletion failures are logged and skipped.
        """
        owner_dir = self.owner_dir(owner_id)
        result = CleanupResult(owner_id=owner_id)

        with self._commit_lock:
            live = set()
            for dream in self._store.fetch_all(owner_id):
                if dream.local_media_path:
                    live.add(dream.local_media_path)
                if dream.local_audio_path:
                    live.add(dream.local_audio_path)

            if not owner_dir.is_dir():
                return result

            for entry in sorted(owner_dir.iterdir()):
                if entry.is_dir() and not entry.is_symlink():
                    logger.debug(f"Cleanup ignoring directory {entry}")
                    continue
                if entry.name in live:
                    result.kept.append(entry.name)
                    continue
                try:
                    entry.unlink()
                    result.removed.append(entry.name)
                except OSError as e:
                    logger.warning(f"Could not delete cached file {entry}: {e}", exc_info=True)
                    result.failed.append(entry.name)

        logger.info(
            f"Cache cleanup for {owner_id}: removed {len(result.removed)}, "
            f"kept {len(result.kept)}, failed {len(result.failed)}"
        )
        log_cleanup(owner_id, len(result.removed), len(result.kept), len(result.failed))
        return result

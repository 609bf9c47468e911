"""DreamSync class - the main interface for dream sync and media caching."""

import logging
import os
from pathlib import Path
from typing import Optional

import httpx

from dreamsync.core.media import MediaMixin
from dreamsync.core.sync import SyncMixin
from dreamsync.core.writers import WritersMixin
from dreamsync.storage.cloud import BlobStore, RemoteMirror
from dreamsync.storage.media_cache import MediaCache
from dreamsync.storage.sqlite import DreamStore
from dreamsync.storage.sync_engine import Reconciler
from dreamsync.types import ConflictPolicy

logger = logging.getLogger(__name__)


class DreamSync(SyncMixin, MediaMixin, WritersMixin):
    """Main interface for dreamsync operations.

    Every collaborator can be injected; anything left out is built from the
    data directory and stored cloud credentials. Without credentials the
    local operations still work and the cloud operations raise ``SyncError``.

    Examples:
        ds = DreamSync()
        ds.sync_metadata("user-1")
        path = ds.ensure_local(ds.dreams("user-1")[0])
    """

    def __init__(
        self,
        store: Optional[DreamStore] = None,
        mirror: Optional[RemoteMirror] = None,
        blobs: Optional[BlobStore] = None,
        cache_root: Optional[Path] = None,
        policy: Optional[ConflictPolicy] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        """Initialize DreamSync.

        Args:
            store: Local record store. Defaults to ``<data_home>/dreams.db``.
            mirror: Remote document collection client.
            blobs: Remote blob store client.
            cache_root: Media cache root. Defaults to ``<data_home>/media``.
            policy: Conflict policy. Defaults to DREAMSYNC_CONFLICT_POLICY,
                then last-writer-wins.
            http_client: Shared ``httpx.Client`` for clients built here.
        """
        self._storage = store if store is not None else DreamStore()
        self._mirror = (
            mirror if mirror is not None else RemoteMirror.from_credentials(client=http_client)
        )
        self._blobs = blobs if blobs is not None else BlobStore.from_credentials(client=http_client)
        if self._mirror is None:
            logger.info("No cloud credentials configured; running local-only")

        self.policy = policy or ConflictPolicy.parse(os.environ.get("DREAMSYNC_CONFLICT_POLICY"))
        self._reconciler = (
            Reconciler(self._storage, self._mirror, policy=self.policy)
            if self._mirror is not None
            else None
        )
        self._cache = MediaCache(self._storage, self._blobs, root=cache_root)

    @property
    def storage(self) -> DreamStore:
        return self._storage

    @property
    def cache(self) -> MediaCache:
        return self._cache

    def close(self) -> None:
        for client in (self._mirror, self._blobs):
            if client is not None:
                client.close()
        self._storage.close()

"""Storage layer for dreamsync.

Local SQLite store, remote collection and blob clients, the metadata
reconciler and the on-device media cache.
"""

from dreamsync.storage.cloud import BlobStore, RemoteMirror, load_cloud_credentials
from dreamsync.storage.media_cache import MediaCache
from dreamsync.storage.sqlite import DreamStore
from dreamsync.storage.sync_engine import Reconciler

__all__ = [
    "BlobStore",
    "DreamStore",
    "MediaCache",
    "Reconciler",
    "RemoteMirror",
    "load_cloud_credentials",
]

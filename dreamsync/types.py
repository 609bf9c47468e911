"""Shared types for dreamsync.

Record dataclasses, status enums, sync/cleanup result types and the
error taxonomy used by the store, the cloud clients, the reconciler and
the media cache.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

# === Time helpers ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def utc_now_dt() -> datetime:
    """Get current timestamp as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string. Naive values are assumed to be UTC."""
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# === Enums ===

E = TypeVar("E", bound=Enum)


def decode_enum(enum_cls: Type[E], value: Any, default: Optional[E]) -> Optional[E]:
    """Decode a raw wire/database string into an enum member.

    Unknown or missing values decode to ``default`` instead of raising.
    """
    if isinstance(value, enum_cls):
        return value
    if not isinstance(value, str):
        return default
    try:
        return enum_cls(value)
    except ValueError:
        aliases = getattr(enum_cls, "_aliases", None)
        mapping = aliases() if callable(aliases) else {}
        return mapping.get(value, default)


class SyncState(str, Enum):
    """Position of a record in the upload/sync lifecycle."""

    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED = "failed"
    SYNCED = "synced"

    @classmethod
    def parse(cls, value: Any) -> "SyncState":
        return decode_enum(cls, value, cls.PENDING)


class ProcessingState(str, Enum):
    """Position of a record in the remote media-generation pipeline.

    Values match the strings stored in remote documents.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    GENERATING = "aiGenerating"
    GENERATED = "aiCompleted"

    @classmethod
    def _aliases(cls) -> Dict[str, "ProcessingState"]:
        return {"generating": cls.GENERATING, "generated": cls.GENERATED}

    @classmethod
    def parse(cls, value: Any) -> "ProcessingState":
        return decode_enum(cls, value, cls.PENDING)


class VideoStyle(str, Enum):
    """Style selector for generated dream videos."""

    REALISTIC = "realistic"
    ANIMATED = "animated"
    CURSED = "cursed"

    @classmethod
    def parse(cls, value: Any) -> Optional["VideoStyle"]:
        return decode_enum(cls, value, None)


class ConflictPolicy(str, Enum):
    """How the reconciler resolves a record changed on both sides."""

    LAST_WRITER_WINS = "last_writer_wins"  # compare updated_at
    REMOTE_WINS = "remote_wins"  # remote content always applied

    @classmethod
    def parse(cls, value: Any) -> "ConflictPolicy":
        return decode_enum(cls, value, cls.LAST_WRITER_WINS)


# === Records ===


@dataclass
class Dream:
    """A journaled dream with its media locators and sync metadata."""

    id: str
    owner_id: str
    title: str
    description: str
    media_url: str
    date: Optional[datetime] = None
    dream_date: Optional[datetime] = None
    transcript: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    category: Optional[str] = None
    video_style: Optional[VideoStyle] = None
    audio_url: Optional[str] = None
    # Generation pipeline
    processing_state: ProcessingState = ProcessingState.PENDING
    is_processing: bool = False
    processing_progress: float = 0.0
    processing_error: Optional[str] = None
    is_ai_generated: bool = False
    original_media_url: Optional[str] = None
    ai_generation_date: Optional[datetime] = None
    # Device-local cache state, never sent to the remote collection
    local_media_path: Optional[str] = None
    local_audio_path: Optional[str] = None
    # Sync metadata
    sync_state: SyncState = SyncState.PENDING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        owner_id: str,
        title: str,
        description: str,
        media_url: str,
        dream_date: Optional[datetime] = None,
        **kwargs: Any,
    ) -> "Dream":
        """Create a fresh record in pending/pending state."""
        now = utc_now_dt()
        return cls(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            title=title,
            description=description,
            media_url=media_url,
            date=now,
            dream_date=dream_date or now,
            created_at=now,
            updated_at=now,
            **kwargs,
        )


# Fields owned by the remote collection. A metadata sync may overwrite them.
CONTENT_FIELDS = (
    "title",
    "description",
    "transcript",
    "tags",
    "category",
    "video_style",
    "date",
    "dream_date",
    "audio_url",
    "processing_state",
    "is_processing",
    "processing_progress",
    "processing_error",
    "is_ai_generated",
    "original_media_url",
    "ai_generation_date",
    "updated_at",
)

# Fields describing this device's cache. A metadata sync never touches them.
CACHE_FIELDS = ("local_media_path", "local_audio_path")


# === Sync Types ===


@dataclass
class SyncConflict:
    """Details of a conflict the reconciler resolved.

    Both snapshots are kept so the losing side can be inspected later.
    """

    id: str
    record_id: str
    owner_id: str
    local_version: Dict[str, Any]
    remote_version: Dict[str, Any]
    resolution: str  # "local_wins" or "remote_wins"
    resolved_at: datetime
    policy_decision: Optional[str] = None
    diff_hash: Optional[str] = None


@dataclass
class SyncResult:
    """Result of a metadata sync pass."""

    owner_id: str = ""
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    conflicts: List[SyncConflict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def pulled(self) -> int:
        """Records written locally from remote documents."""
        return self.inserted + self.updated

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)


@dataclass
class PushResult:
    """Result of pushing pending local records to the remote collection."""

    pushed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0


@dataclass
class CleanupResult:
    """Result of a cache garbage-collection pass."""

    owner_id: str
    kept: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


# === Errors ===


class DreamSyncError(Exception):
    """Base class for all dreamsync errors."""

    user_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message or self.user_message)
        self.cause = cause


class SyncError(DreamSyncError):
    """A metadata sync or remote write failed."""

    user_message = "Sync failed"


class NoNetworkError(SyncError):
    """Connectivity is unavailable. Callers usually defer silently."""

    user_message = "Unable to sync - no network connection"


class NetworkError(SyncError):
    """A transport failure other than missing connectivity."""

    user_message = "Network error occurred while syncing"

    def __init__(
        self,
        message: Optional[str] = None,
        cause: Optional[BaseException] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, cause)
        self.status_code = status_code


class RemoteDataError(SyncError):
    """A remote payload was malformed or rejected."""

    user_message = "Received invalid data from the server"


class LocalStoreError(SyncError):
    """The local persistence layer failed."""

    user_message = "Could not save dreams on this device"


class CacheError(DreamSyncError):
    """A media cache operation failed."""

    user_message = "Could not load the video"


class DownloadFailedError(CacheError):
    """Downloading a media file failed. The record is left untouched."""

    user_message = "Could not download the video"


class DownloadCancelledError(DownloadFailedError):
    """The caller abandoned a download. Partial bytes were discarded."""

    user_message = "Download cancelled"


class FileNotFoundAfterDownloadError(CacheError):
    """A download reported success but the file is absent.

    Indicates a filesystem or path construction bug, so it is never retried.
    """

    user_message = "Video file missing after download"

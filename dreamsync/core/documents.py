"""Wire codec for remote dream documents.

Remote documents are JSON objects with camelCase keys. Timestamps travel as
``{"seconds": int, "nanoseconds": int}``; ISO-8601 strings and numeric epoch
seconds are accepted on decode. Device-local cache fields never appear on
the wire in either direction.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from dreamsync.types import (
    Dream,
    ProcessingState,
    RemoteDataError,
    SyncState,
    VideoStyle,
    parse_datetime,
)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

REQUIRED_KEYS = (
    "id",
    "ownerId",
    "title",
    "description",
    "date",
    "mediaURL",
    "createdAt",
    "updatedAt",
    "dreamDate",
)

# Older clients wrote these names; they are read but never written.
LEGACY_KEYS = {
    "ownerId": "userId",
    "mediaURL": "videoURL",
    "processingStatus": "processingState",
    "originalMediaURL": "originalVideoURL",
}

TIMESTAMP_KEYS = ("date", "createdAt", "updatedAt", "dreamDate")


def timestamp_to_wire(value: Optional[datetime]) -> Optional[Dict[str, int]]:
    """Encode a datetime as the epoch-based wire timestamp."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - EPOCH
    return {
        "seconds": delta.days * 86400 + delta.seconds,
        "nanoseconds": delta.microseconds * 1000,
    }


def timestamp_from_wire(value: Any) -> Optional[datetime]:
    """Decode a wire timestamp. Returns None for anything unrecognized."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
        if not isinstance(seconds, (int, float)) or not isinstance(nanos, (int, float)):
            return None
        try:
            return EPOCH + timedelta(seconds=int(seconds), microseconds=int(nanos) // 1000)
        except (OverflowError, ValueError):
            return None
    if isinstance(value, (int, float)):
        try:
            return EPOCH + timedelta(seconds=value)
        except (OverflowError, ValueError):
            return None
    if isinstance(value, str):
        return parse_datetime(value)
    return None


def _get(doc: Dict[str, Any], key: str) -> Any:
    if key in doc:
        return doc[key]
    legacy = LEGACY_KEYS.get(key)
    if legacy:
        return doc.get(legacy)
    return None


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _tags(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [tag for tag in value if isinstance(tag, str)]


def dream_to_document(dream: Dream) -> Dict[str, Any]:
    """Serialize a dream into a remote document.

    ``local_media_path``, ``local_audio_path`` and ``sync_state`` describe this
    device only and are left out.
    """
    return {
        "id": dream.id,
        "ownerId": dream.owner_id,
        "title": dream.title,
        "description": dream.description,
        "mediaURL": dream.media_url,
        "date": timestamp_to_wire(dream.date),
        "dreamDate": timestamp_to_wire(dream.dream_date),
        "createdAt": timestamp_to_wire(dream.created_at),
        "updatedAt": timestamp_to_wire(dream.updated_at),
        "transcript": dream.transcript,
        "tags": list(dream.tags),
        "category": dream.category,
        "videoStyle": dream.video_style.value if dream.video_style else None,
        "audioURL": dream.audio_url,
        "processingStatus": dream.processing_state.value,
        "isProcessing": dream.is_processing,
        "processingProgress": dream.processing_progress,
        "processingError": dream.processing_error,
        "isAIGenerated": dream.is_ai_generated,
        "originalMediaURL": dream.original_media_url,
        "aiGenerationDate": timestamp_to_wire(dream.ai_generation_date),
    }


def dream_from_document(doc: Any) -> Dream:
    """Parse a remote document into a Dream.

    The returned record has no cache fields and ``sync_state`` of
    ``pending``; the caller decides how it enters the local store.

    Raises:
        RemoteDataError: If the document is not an object, or a required
            field is missing or malformed.
    """
    if not isinstance(doc, dict):
        raise RemoteDataError(f"Document is not an object: {type(doc).__name__}")

    missing = [key for key in REQUIRED_KEYS if _get(doc, key) is None]
    if missing:
        raise RemoteDataError(
            f"Document {doc.get('id', '<no id>')} missing required fields: {', '.join(missing)}"
        )

    for key in ("id", "ownerId", "title", "description", "mediaURL"):
        if not isinstance(_get(doc, key), str):
            raise RemoteDataError(f"Document {doc.get('id')} field {key} must be a string")
    if not doc["id"].strip():
        raise RemoteDataError("Document id cannot be empty")

    timestamps = {}
    for key in TIMESTAMP_KEYS:
        parsed = timestamp_from_wire(doc[key])
        if parsed is None:
            raise RemoteDataError(f"Document {doc['id']} field {key} is not a timestamp")
        timestamps[key] = parsed

    progress = doc.get("processingProgress", 0.0)
    if isinstance(progress, bool) or not isinstance(progress, (int, float)):
        progress = 0.0

    return Dream(
        id=doc["id"],
        owner_id=_get(doc, "ownerId"),
        title=doc["title"],
        description=doc["description"],
        media_url=_get(doc, "mediaURL"),
        date=timestamps["date"],
        dream_date=timestamps["dreamDate"],
        created_at=timestamps["createdAt"],
        updated_at=timestamps["updatedAt"],
        transcript=_optional_str(doc.get("transcript")),
        tags=_tags(doc.get("tags")),
        category=_optional_str(doc.get("category")),
        video_style=VideoStyle.parse(doc.get("videoStyle")),
        audio_url=_optional_str(doc.get("audioURL")),
        processing_state=ProcessingState.parse(_get(doc, "processingStatus")),
        is_processing=bool(doc.get("isProcessing", False)),
        processing_progress=float(progress),
        processing_error=_optional_str(doc.get("processingError")),
        is_ai_generated=bool(doc.get("isAIGenerated", False)),
        original_media_url=_optional_str(_get(doc, "originalMediaURL")),
        ai_generation_date=timestamp_from_wire(doc.get("aiGenerationDate")),
        sync_state=SyncState.PENDING,
    )

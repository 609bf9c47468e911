"""Tests for the remote document codec."""

from datetime import datetime, timezone

import pytest

from dreamsync.core.documents import (
    dream_from_document,
    dream_to_document,
    timestamp_from_wire,
    timestamp_to_wire,
)
from dreamsync.types import ProcessingState, RemoteDataError, SyncState, VideoStyle

T0 = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


class TestTimestamps:
    def test_to_wire(self):
        when = datetime(1970, 1, 1, 0, 0, 10, 250000, tzinfo=timezone.utc)
        assert timestamp_to_wire(when) == {"seconds": 10, "nanoseconds": 250000000}

    def test_naive_treated_as_utc(self):
        assert timestamp_to_wire(datetime(1970, 1, 2)) == {"seconds": 86400, "nanoseconds": 0}

    def test_from_wire_preserves_microseconds(self):
        when = datetime(2024, 5, 1, 8, 0, 0, 123456, tzinfo=timezone.utc)
        assert timestamp_from_wire(timestamp_to_wire(when)) == when

    def test_from_wire_underscored_keys(self):
        assert timestamp_from_wire({"_seconds": 86400, "_nanoseconds": 0}) == datetime(
            1970, 1, 2, tzinfo=timezone.utc
        )

    def test_from_iso_string(self):
        assert timestamp_from_wire("2024-05-01T08:00:00+00:00") == T0

    def test_from_epoch_number(self):
        assert timestamp_from_wire(T0.timestamp()) == T0

    @pytest.mark.parametrize("raw", [None, True, "soon", {"minutes": 3}, [1, 2]])
    def test_unrecognized_is_none(self, raw):
        assert timestamp_from_wire(raw) is None


class TestDreamFromDocument:
    def test_parses_complete_document(self, make_doc):
        doc = make_doc(videoStyle="animated", processingStatus="aiGenerating", isProcessing=True)

        dream = dream_from_document(doc)

        assert dream.id == "d1"
        assert dream.owner_id == "u1"
        assert dream.title == "T1"
        assert dream.updated_at == T0
        assert dream.video_style is VideoStyle.ANIMATED
        assert dream.processing_state is ProcessingState.GENERATING
        assert dream.is_processing is True
        assert dream.tags == ["flying"]

    def test_never_takes_cache_fields(self, make_doc):
        doc = make_doc(localMediaPath="other-device.mp4", local_media_path="x.mp4")
        dream = dream_from_document(doc)
        assert dream.local_media_path is None
        assert dream.sync_state is SyncState.PENDING

    def test_legacy_keys(self, make_doc):
        doc = make_doc()
        doc["userId"] = doc.pop("ownerId")
        doc["videoURL"] = doc.pop("mediaURL")

        dream = dream_from_document(doc)

        assert dream.owner_id == "u1"
        assert dream.media_url.endswith("/d1.mp4")

    @pytest.mark.parametrize(
        "missing", ["id", "ownerId", "title", "description", "mediaURL", "updatedAt", "dreamDate"]
    )
    def test_missing_required_field(self, make_doc, missing):
        doc = make_doc()
        del doc[missing]
        with pytest.raises(RemoteDataError, match=missing):
            dream_from_document(doc)

    def test_malformed_timestamp(self, make_doc):
        with pytest.raises(RemoteDataError, match="updatedAt"):
            dream_from_document(make_doc(updatedAt="not a date"))

    def test_wrong_type_title(self, make_doc):
        with pytest.raises(RemoteDataError, match="title"):
            dream_from_document(make_doc(title=42))

    def test_not_an_object(self):
        with pytest.raises(RemoteDataError):
            dream_from_document(["d1"])

    def test_unknown_enums_fall_back(self, make_doc):
        dream = dream_from_document(make_doc(processingStatus="exploded", videoStyle="noir"))
        assert dream.processing_state is ProcessingState.PENDING
        assert dream.video_style is None

    def test_bad_optional_fields_are_ignored(self, make_doc):
        dream = dream_from_document(
            make_doc(tags="flying", processingProgress="half", transcript=7)
        )
        assert dream.tags == []
        assert dream.processing_progress == 0.0
        assert dream.transcript is None


class TestDreamToDocument:
    def test_excludes_device_fields(self, make_dream):
        dream = make_dream(local_media_path="x.mp4", local_audio_path="x.m4a")
        doc = dream_to_document(dream)

        assert "local_media_path" not in doc
        assert "localMediaPath" not in doc
        assert "syncState" not in doc
        assert "x.mp4" not in doc.values()

    def test_enums_as_strings(self, make_dream):
        doc = dream_to_document(
            make_dream(processing_state=ProcessingState.GENERATED, video_style=VideoStyle.CURSED)
        )
        assert doc["processingStatus"] == "aiCompleted"
        assert doc["videoStyle"] == "cursed"

    def test_parses_back(self, make_dream):
        dream = make_dream(transcript="glass city", category="lucid")
        parsed = dream_from_document(dream_to_document(dream))

        assert parsed.title == dream.title
        assert parsed.updated_at == dream.updated_at
        assert parsed.transcript == "glass city"
        assert parsed.category == "lucid"

"""Tests for operator-driven completion of pending tasks."""

import json
from pathlib import Path

import pytest

from clipper.core.exceptions import InvalidStateError, MissingInputError, TaskNotFoundError
from clipper.models.task import TaskStatus, TaskType


# ---------------------------------------------------------------------------
# Subtitle uploads
# ---------------------------------------------------------------------------

class TestManualSubtitles:
    @pytest.mark.asyncio
    async def test_json_segments_saved_as_srt(self, manual, store, make_video, fetch_video, settings):
        video = await make_video()
        task = await store.enqueue(TaskType.SUBTITLE_GENERATION, video.id, "/uploads/v.mp4")
        upload = json.dumps([
            {"start": 0, "end": 1.5, "text": "hello"},
            {"start": 1.5, "end": 3, "text": "world"},
        ]).encode()

        outcome = await manual.complete(task.id, artifact=upload, filename="subs.json")

        expected_url = f"/processed/subtitles/subtitle_{video.id}.srt"
        assert outcome.message == "Subtitles saved"
        assert outcome.subtitle_url == expected_url
        assert outcome.task.status == TaskStatus.COMPLETED.value
        assert outcome.task.result["subtitle_url"] == expected_url

        srt = (Path(settings.MEDIA_ROOT) / expected_url.lstrip("/")).read_text(encoding="utf-8")
        assert srt.startswith("1\n00:00:00,000 --> 00:00:01,500\nhello\n")

        stored = await fetch_video(video.id)
        assert stored.has_subtitles is True
        assert stored.subtitle_url == expected_url
        assert [s["text"] for s in stored.subtitles] == ["hello", "world"]

    @pytest.mark.asyncio
    async def test_raw_file_kept_as_uploaded(self, manual, store, make_video, fetch_video, settings):
        video = await make_video()
        task = await store.enqueue(TaskType.SUBTITLE_GENERATION, video.id, "/uploads/v.mp4")
        raw = b"1\n00:00:00,000 --> 00:00:02,000\nhi\n"

        outcome = await manual.complete(
            task.id, artifact=raw, filename="upload.vtt", storage_location="/manual/subs/"
        )

        assert outcome.message == "Subtitle file saved"
        assert outcome.subtitle_url == f"/manual/subs/subtitle_{video.id}.vtt"
        assert (Path(settings.MEDIA_ROOT) / "manual" / "subs" / f"subtitle_{video.id}.vtt").read_bytes() == raw

        stored = await fetch_video(video.id)
        assert stored.has_subtitles is True
        assert stored.subtitles is None

    @pytest.mark.asyncio
    async def test_missing_upload_fails_task(self, manual, store, make_video):
        video = await make_video()
        task = await store.enqueue(TaskType.SUBTITLE_GENERATION, video.id, "/uploads/v.mp4")

        with pytest.raises(MissingInputError, match="No subtitle file provided"):
            await manual.complete(task.id)

        failed = await store.find_by_id(task.id)
        assert failed.status == TaskStatus.FAILED.value
        assert failed.error == "MissingInputError: No subtitle file provided"


# ---------------------------------------------------------------------------
# Audio copies
# ---------------------------------------------------------------------------

class TestManualAudio:
    @pytest.mark.asyncio
    async def test_copies_source_media(self, manual, store, make_video, fetch_video, media_file, settings):
        video = await make_video()
        media_file("/uploads/talk.mp4", b"source-bytes")
        task = await store.enqueue(TaskType.AUDIO_EXTRACTION, video.id, "/uploads/talk.mp4")

        outcome = await manual.complete(task.id)

        expected_url = f"/processed/audio/audio_{video.id}.mp4"
        assert outcome.message == "Audio saved"
        assert outcome.audio_url == expected_url
        assert outcome.task.result == {"task_type": "audio_extraction", "audio_url": expected_url}
        assert (Path(settings.MEDIA_ROOT) / expected_url.lstrip("/")).read_bytes() == b"source-bytes"
        assert (await fetch_video(video.id)).audio_url == expected_url

    @pytest.mark.asyncio
    async def test_missing_source_fails_task(self, manual, store, make_video):
        video = await make_video()
        task = await store.enqueue(TaskType.AUDIO_EXTRACTION, video.id, "/uploads/gone.mp4")

        with pytest.raises(MissingInputError):
            await manual.complete(task.id)

        assert (await store.find_by_id(task.id)).status == TaskStatus.FAILED.value


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------

class TestPreconditions:
    @pytest.mark.asyncio
    async def test_unknown_task(self, manual):
        with pytest.raises(TaskNotFoundError):
            await manual.complete(9999, artifact=b"x")

    @pytest.mark.asyncio
    async def test_non_pending_task_untouched(self, manual, store, make_video):
        video = await make_video()
        task = await store.enqueue(TaskType.SUBTITLE_GENERATION, video.id, "/uploads/v.mp4")
        await store.transition(task.id, TaskStatus.PENDING, TaskStatus.PROCESSING)

        with pytest.raises(InvalidStateError):
            await manual.complete(task.id, artifact=b"x")

        current = await store.find_by_id(task.id)
        assert current.status == TaskStatus.PROCESSING.value
        assert current.error is None

    @pytest.mark.asyncio
    async def test_unsupported_type(self, manual, store, make_video):
        video = await make_video()
        task = await store.enqueue(TaskType.HIGHLIGHT_EXTRACTION, video.id)

        with pytest.raises(InvalidStateError, match="cannot be completed manually"):
            await manual.complete(task.id, artifact=b"[]")

        assert (await store.find_by_id(task.id)).status == TaskStatus.PENDING.value

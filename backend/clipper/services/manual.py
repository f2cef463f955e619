"""Operator-driven completion of pending tasks.

When a collaborator is unavailable an operator can finish a pending
``subtitle_generation`` task by uploading the subtitle file, or an
``audio_extraction`` task by having the source media copied into place.  The
task goes straight from ``pending`` to ``completed`` in the same transaction
as the Video write.
"""

from __future__ import annotations

import logging
import mimetypes
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from urllib.parse import urlparse

from pydantic import BaseModel
from sqlalchemy import select

from clipper.core.config import Settings
from clipper.core.database import Database
from clipper.core.exceptions import (
    InvalidStateError,
    MissingInputError,
    StaleTaskError,
    TaskNotFoundError,
    describe_error,
)
from clipper.core.redis import JobStatusPublisher
from clipper.core.storage import ObjectStorage
from clipper.models.task import Task, TaskStatus, TaskType, utcnow
from clipper.models.video import Video
from clipper.schemas.task import AudioExtractionResult, SubtitleResult, dump_result
from clipper.services.subtitles import parse_json_segments, render_srt, segments_to_json
from clipper.services.task_store import TaskStore

logger = logging.getLogger(__name__)

MANUAL_TASK_TYPES = frozenset({TaskType.SUBTITLE_GENERATION, TaskType.AUDIO_EXTRACTION})


@dataclass
class ManualOutcome:
    task: Task
    message: str
    audio_url: str | None = None
    subtitle_url: str | None = None


class ManualFallbackHandler:
    def __init__(
        self,
        db: Database,
        store: TaskStore,
        storage: ObjectStorage,
        *,
        settings: Settings,
        publisher: JobStatusPublisher | None = None,
    ) -> None:
        self.db = db
        self.store = store
        self.storage = storage
        self.settings = settings
        self.publisher = publisher

    async def complete(
        self,
        task_id: int,
        *,
        artifact: bytes | None = None,
        filename: str | None = None,
        storage_location: str | None = None,
    ) -> ManualOutcome:
        """Complete a pending task from an operator-supplied artifact.

        Raises :class:`TaskNotFoundError` / :class:`InvalidStateError` without
        touching the task.  Any later error fails the task and is re-raised.
        """
        task = await self.store.find_by_id(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        if task.task_status is not TaskStatus.PENDING:
            raise InvalidStateError(f"Task {task_id} is {task.status}, not pending")
        if task.task_type not in MANUAL_TASK_TYPES:
            raise InvalidStateError(f"{task.type} tasks cannot be completed manually")

        try:
            if task.task_type is TaskType.SUBTITLE_GENERATION:
                outcome = await self._complete_subtitles(task, artifact, filename, storage_location)
            else:
                outcome = await self._complete_audio(task, storage_location)
        except StaleTaskError:
            logger.warning("Task %s was claimed while being completed manually", task_id)
            raise
        except Exception as exc:
            logger.exception("Manual processing of task %s failed", task_id)
            await self._fail(task, exc)
            raise

        logger.info("Task %s (%s) completed manually", task_id, task.type)
        if self.publisher is not None:
            await self.publisher.publish(
                task_id,
                TaskStatus.COMPLETED.value,
                extra={"task_type": task.type, "video_id": task.video_id, "manual": True},
            )
        return outcome

    # ------------------------------------------------------------------

    def _prefix(self, storage_location: str | None, default: str) -> str:
        return (storage_location or default).strip("/")

    async def _commit(
        self,
        task: Task,
        result: BaseModel,
        apply: Callable[[Video], None],
    ) -> Task:
        async with self.db.begin() as session:
            video = await session.scalar(
                select(Video).where(Video.id == task.video_id).with_for_update()
            )
            if video is None:
                raise MissingInputError(f"Video {task.video_id} not found")
            apply(video)
            video.updated_at = utcnow()
            await session.flush()
            return await self.store.transition(
                task.id,
                TaskStatus.PENDING,
                TaskStatus.COMPLETED,
                result=dump_result(result),
                session=session,
            )

    async def _fail(self, task: Task, exc: BaseException) -> None:
        error = describe_error(exc)
        try:
            await self.store.transition(task.id, TaskStatus.PENDING, TaskStatus.FAILED, error=error)
        except StaleTaskError:
            logger.warning("Task %s left pending before it could be failed", task.id)
            return
        if self.publisher is not None:
            await self.publisher.publish(task.id, TaskStatus.FAILED.value, detail=error)

    async def _complete_subtitles(
        self,
        task: Task,
        artifact: bytes | None,
        filename: str | None,
        storage_location: str | None,
    ) -> ManualOutcome:
        if not artifact:
            raise MissingInputError("No subtitle file provided")
        prefix = self._prefix(storage_location, self.settings.SUBTITLE_OUTPUT_DIR)

        segments = parse_json_segments(artifact)
        if segments is not None:
            subtitle_url = await self.storage.put(
                render_srt(segments).encode("utf-8"),
                f"{prefix}/subtitle_{task.video_id}.srt",
                content_type="application/x-subrip",
            )
            subtitles = segments_to_json(segments)
            message = "Subtitles saved"
        else:
            # Not a segment array: keep the upload as-is
            ext = Path(filename or "").suffix or ".srt"
            name = f"subtitle_{task.video_id}{ext}"
            subtitle_url = await self.storage.put(
                artifact,
                f"{prefix}/{name}",
                content_type=mimetypes.guess_type(name)[0] or "application/octet-stream",
            )
            subtitles = None
            message = "Subtitle file saved"

        def apply(video: Video) -> None:
            if subtitles is not None:
                video.subtitles = subtitles
            video.subtitle_url = subtitle_url
            video.has_subtitles = True

        result = SubtitleResult(subtitles=segments, subtitle_url=subtitle_url)
        updated = await self._commit(task, result, apply)
        return ManualOutcome(task=updated, message=message, subtitle_url=subtitle_url)

    async def _complete_audio(self, task: Task, storage_location: str | None) -> ManualOutcome:
        location = task.media_url
        if not location:
            async with self.db.begin() as session:
                video = await session.get(Video, task.video_id)
            location = video.url if video is not None else None
        if not location:
            raise MissingInputError(f"Task {task.id} has no media location")

        prefix = self._prefix(storage_location, self.settings.AUDIO_OUTPUT_DIR)
        ext = Path(urlparse(location).path).suffix or ".mp3"
        key = f"{prefix}/audio_{task.video_id}{ext}"

        with tempfile.TemporaryDirectory(dir=self.settings.TEMP_DIR) as tmp:
            source = self.storage.resolve_local(location)
            if source is None:
                source = await self.storage.fetch_to(location, Path(tmp) / f"source{ext}")
            elif not source.is_file():
                raise MissingInputError(f"Media not found: {location}")
            audio_url = await self.storage.put_file(
                source, key, content_type=mimetypes.guess_type(key)[0] or "application/octet-stream"
            )

        def apply(video: Video) -> None:
            video.audio_url = audio_url

        updated = await self._commit(task, AudioExtractionResult(audio_url=audio_url), apply)
        return ManualOutcome(task=updated, message="Audio saved", audio_url=audio_url)

"""Single-task execution: claim, run the type handler, record the outcome.

A task is claimed with a conditional ``pending -> processing`` transition; a
lost race means another worker owns it and the task is skipped.  Handlers do
all collaborator work *outside* any database transaction and hand back a
:class:`HandlerOutcome`; the Video write and the ``processing -> completed``
transition are then committed together.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse
from uuid import uuid4

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update

from clipper.core.config import Settings
from clipper.core.database import Database
from clipper.core.exceptions import (
    MissingInputError,
    StaleTaskError,
    TaskNotFoundError,
    ValidationError,
    describe_error,
)
from clipper.core.redis import JobStatusPublisher
from clipper.core.storage import ObjectStorage, is_remote_url
from clipper.models.task import Task, TaskStatus, TaskType, utcnow
from clipper.models.video import Video, VideoStatus
from clipper.schemas.media import Clip, ClipRequest, HighlightRequest, SubtitleSegment
from clipper.schemas.task import (
    AudioExtractionResult,
    ClipResult,
    HighlightResult,
    SubtitleResult,
    TranscriptionResult,
    dump_result,
)
from clipper.services.highlights import HighlightExtractor
from clipper.services.media import MediaTool
from clipper.services.subtitles import normalize_segments, parse_subtitle_document, segments_to_json
from clipper.services.task_store import TaskStore
from clipper.services.transcription import TranscriptionAdapter, await_transcript

logger = logging.getLogger(__name__)

# A failure of these leaves the video unusable downstream.
BLOCKING_TYPES = frozenset({
    TaskType.AUDIO_EXTRACTION,
    TaskType.TRANSCRIPTION,
    TaskType.SUBTITLE_GENERATION,
})


@dataclass
class HandlerOutcome:
    result: BaseModel
    apply_to_video: Optional[Callable[[Video], None]] = None


Handler = Callable[[Task, Video, Path], Awaitable[HandlerOutcome]]


class TaskProcessor:
    def __init__(
        self,
        db: Database,
        store: TaskStore,
        storage: ObjectStorage,
        *,
        settings: Settings,
        transcriber: TranscriptionAdapter,
        subtitle_service: TranscriptionAdapter,
        media_tool: MediaTool,
        highlight_extractor: HighlightExtractor,
        publisher: JobStatusPublisher | None = None,
        poll_sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.db = db
        self.store = store
        self.storage = storage
        self.settings = settings
        self.transcriber = transcriber
        self.subtitle_service = subtitle_service
        self.media_tool = media_tool
        self.highlight_extractor = highlight_extractor
        self.publisher = publisher
        self._poll_sleep = poll_sleep

        self._handlers = self._build_handlers()
        missing = set(TaskType) - set(self._handlers)
        if missing:
            raise RuntimeError(
                "No handler for task type(s): " + ", ".join(sorted(t.value for t in missing))
            )

    def _build_handlers(self) -> dict[TaskType, Handler]:
        return {
            TaskType.AUDIO_EXTRACTION: self._handle_audio_extraction,
            TaskType.TRANSCRIPTION: self._handle_transcription,
            TaskType.SUBTITLE_GENERATION: self._handle_subtitle_generation,
            TaskType.HIGHLIGHT_EXTRACTION: self._handle_highlight_extraction,
            TaskType.CLIP_GENERATION: self._handle_clip_generation,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def process(self, task: Task) -> TaskStatus | None:
        """Run one pending task to a terminal state.

        Returns the terminal status, or ``None`` when the task was claimed by
        someone else first.  Handler exceptions never escape; datastore
        errors during the claim do.
        """
        try:
            claimed = await self.store.transition(task.id, TaskStatus.PENDING, TaskStatus.PROCESSING)
        except StaleTaskError:
            logger.debug("Task %s already claimed, skipping", task.id)
            return None

        logger.info("Processing task %s (%s) for video %s", claimed.id, claimed.type, claimed.video_id)
        await self._publish(claimed, TaskStatus.PROCESSING)

        try:
            outcome = await self._run_handler(claimed)
            await self._complete(claimed, outcome)
        except StaleTaskError:
            # Reaped (lease expired) while the handler was running
            logger.warning("Task %s left processing before it could complete", claimed.id)
            return None
        except Exception as exc:
            logger.exception("Task %s (%s) failed", claimed.id, claimed.type)
            await self._fail(claimed, exc)
            return TaskStatus.FAILED

        logger.info("Task %s (%s) completed", claimed.id, claimed.type)
        await self._publish(claimed, TaskStatus.COMPLETED)
        return TaskStatus.COMPLETED

    async def process_by_id(self, task_id: int) -> TaskStatus | None:
        task = await self.store.find_by_id(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return await self.process(task)

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    async def _run_handler(self, task: Task) -> HandlerOutcome:
        handler = self._handlers[task.task_type]
        workdir = Path(tempfile.mkdtemp(prefix=f"task_{task.id}_", dir=self.settings.TEMP_DIR))
        try:
            async with self.db.begin() as session:
                video = await session.get(Video, task.video_id)
            if video is None:
                raise MissingInputError(f"Video {task.video_id} not found")
            return await handler(task, video, workdir)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    async def _complete(self, task: Task, outcome: HandlerOutcome) -> None:
        async with self.db.begin() as session:
            if outcome.apply_to_video is not None:
                video = await session.scalar(
                    select(Video).where(Video.id == task.video_id).with_for_update()
                )
                if video is None:
                    raise MissingInputError(f"Video {task.video_id} not found")
                outcome.apply_to_video(video)
                video.updated_at = utcnow()
                await session.flush()
            await self.store.transition(
                task.id,
                TaskStatus.PROCESSING,
                TaskStatus.COMPLETED,
                result=dump_result(outcome.result),
                session=session,
            )

    async def _fail(self, task: Task, exc: BaseException) -> None:
        error = describe_error(exc)
        try:
            await self.store.transition(task.id, TaskStatus.PROCESSING, TaskStatus.FAILED, error=error)
        except StaleTaskError:
            logger.warning("Task %s left processing before it could be failed", task.id)
            return
        await self._publish(task, TaskStatus.FAILED, detail=error)

        if task.task_type in BLOCKING_TYPES:
            try:
                async with self.db.begin() as session:
                    await session.execute(
                        update(Video)
                        .where(Video.id == task.video_id)
                        .values(status=VideoStatus.ERROR.value, updated_at=utcnow())
                    )
            except Exception:
                logger.exception("Could not mark video %s as errored", task.video_id)

    async def _publish(self, task: Task, status: TaskStatus, *, detail: str | None = None) -> None:
        if self.publisher is None:
            return
        await self.publisher.publish(
            task.id,
            status.value,
            detail=detail,
            extra={"task_type": task.type, "video_id": task.video_id},
        )

    # ------------------------------------------------------------------
    # Input resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _media_location(task: Task, video: Video) -> str:
        if task.task_type is TaskType.TRANSCRIPTION:
            candidates = (task.obs_audio_url, task.local_audio_url, task.media_url)
        else:
            candidates = (task.media_url, video.url)
        for location in candidates:
            if location:
                return location
        raise MissingInputError(f"Task {task.id} has no media location")

    async def _localize(self, location: str, workdir: Path) -> Path:
        """Return a local file for ``location``, downloading into ``workdir`` if needed."""
        local = self.storage.resolve_local(location)
        if local is not None:
            if not local.is_file():
                raise MissingInputError(f"Media not found: {location}")
            return local
        name = Path(urlparse(location).path).name or "input.bin"
        return await self.storage.fetch_to(location, workdir / name)

    async def _read(self, location: str, workdir: Path) -> bytes:
        if is_remote_url(location):
            path = await self.storage.fetch_to(location, workdir / "download.bin")
            return await asyncio.to_thread(path.read_bytes)
        return await self.storage.get(location)

    async def _video_segments(self, video: Video, workdir: Path) -> list[SubtitleSegment]:
        if video.subtitles:
            return normalize_segments(video.subtitles)
        if video.subtitle_url:
            data = await self._read(video.subtitle_url, workdir)
            try:
                return parse_subtitle_document(data)
            except (KeyError, TypeError, ValueError) as exc:
                raise MissingInputError(f"Unreadable subtitle file {video.subtitle_url}: {exc}") from exc
        raise MissingInputError(f"Video {video.id} has no subtitles")

    async def _store_file(self, path: Path, key: str) -> str:
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return await self.storage.put_file(path, key, content_type=content_type)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_audio_extraction(self, task: Task, video: Video, workdir: Path) -> HandlerOutcome:
        source = await self._localize(self._media_location(task, video), workdir)
        fmt = self.settings.AUDIO_EXTRACT_FORMAT
        if fmt:
            audio = await self.media_tool.extract_audio(
                source, workdir / f"audio_{video.id}_{task.id}.{fmt}", fmt
            )
        else:
            audio = source

        key = f"{self.settings.AUDIO_OUTPUT_DIR.strip('/')}/audio_{video.id}_{task.id}{audio.suffix}"
        audio_url = await self._store_file(audio, key)

        def apply(v: Video) -> None:
            v.audio_url = audio_url

        return HandlerOutcome(AudioExtractionResult(audio_url=audio_url), apply)

    async def _handle_transcription(self, task: Task, video: Video, workdir: Path) -> HandlerOutcome:
        source = await self._localize(self._media_location(task, video), workdir)
        outcome = await self.transcriber.transcribe(str(source), video_id=video.id)
        transcript = await await_transcript(
            self.transcriber,
            outcome,
            interval=self.settings.SUBTITLE_POLL_INTERVAL,
            max_attempts=self.settings.SUBTITLE_POLL_MAX_ATTEMPTS,
            sleep=self._poll_sleep,
        )
        subtitles = segments_to_json(transcript.segments)

        def apply(v: Video) -> None:
            v.transcript = transcript.text
            v.subtitles = subtitles
            v.has_subtitles = bool(subtitles)
            v.status = VideoStatus.READY.value

        return HandlerOutcome(
            TranscriptionResult(text=transcript.text, subtitles=transcript.segments), apply
        )

    async def _handle_subtitle_generation(self, task: Task, video: Video, workdir: Path) -> HandlerOutcome:
        # The service reads the media itself, by URL or storage key
        location = self._media_location(task, video)
        outcome = await self.subtitle_service.transcribe(location, video_id=video.id)
        transcript = await await_transcript(
            self.subtitle_service,
            outcome,
            interval=self.settings.SUBTITLE_POLL_INTERVAL,
            max_attempts=self.settings.SUBTITLE_POLL_MAX_ATTEMPTS,
            sleep=self._poll_sleep,
        )
        subtitles = segments_to_json(transcript.segments) if transcript.segments else None

        def apply(v: Video) -> None:
            if subtitles is not None:
                v.subtitles = subtitles
            if transcript.subtitle_url:
                v.subtitle_url = transcript.subtitle_url
            v.has_subtitles = True
            v.status = VideoStatus.READY.value

        return HandlerOutcome(
            SubtitleResult(
                subtitles=transcript.segments or None,
                subtitle_url=transcript.subtitle_url,
            ),
            apply,
        )

    async def _handle_highlight_extraction(self, task: Task, video: Video, workdir: Path) -> HandlerOutcome:
        try:
            params = HighlightRequest.model_validate(task.input_params or {})
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid highlight parameters: {exc.error_count()} error(s)") from exc
        min_duration = params.min_duration or self.settings.HIGHLIGHT_MIN_DURATION
        max_duration = params.max_duration or self.settings.HIGHLIGHT_MAX_DURATION
        if min_duration > max_duration:
            raise ValidationError(f"min_duration {min_duration} exceeds max_duration {max_duration}")

        segments = await self._video_segments(video, workdir)
        if not segments:
            raise MissingInputError(f"Video {video.id} has no subtitles")
        highlights = await self.highlight_extractor.extract(segments, min_duration, max_duration)
        stored = [h.model_dump(mode="json") for h in highlights]

        def apply(v: Video) -> None:
            v.highlights = stored

        return HandlerOutcome(HighlightResult(highlights=highlights), apply)

    async def _handle_clip_generation(self, task: Task, video: Video, workdir: Path) -> HandlerOutcome:
        try:
            request = ClipRequest.model_validate(task.input_params or {})
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid clip parameters: {exc.error_count()} error(s)") from exc

        source = await self._localize(self._media_location(task, video), workdir)
        clip_id = uuid4().hex
        output = workdir / f"clip_{video.id}_{clip_id}.mp4"
        cut = await self.media_tool.cut(source, request.start, request.end, output)
        url = await self._store_file(
            cut.output_location, f"{self.settings.CLIP_OUTPUT_DIR.strip('/')}/{output.name}"
        )

        clip = Clip(
            id=clip_id,
            url=url,
            start=request.start,
            end=request.end,
            text=request.text,
            reason=request.reason,
            duration=round(request.end - request.start, 3),
            source_video_id=video.id,
            source_video_title=video.title,
            file_size=cut.file_size_bytes,
            resolution=cut.resolution,
        )
        stored = clip.model_dump(mode="json")

        def apply(v: Video) -> None:
            v.clips = [*(v.clips or []), stored]

        return HandlerOutcome(ClipResult(clip=clip), apply)

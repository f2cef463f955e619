"""Shared test fixtures for the pipeline test suite."""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

# Ensure models are registered on Base.metadata before table creation
import clipper.models  # noqa: F401
from clipper.core.config import Settings
from clipper.core.database import Base, Database
from clipper.core.storage import LocalStorage
from clipper.main import create_app
from clipper.models.video import Video
from clipper.schemas.media import SubtitleSegment
from clipper.services.highlights import HighlightExtractor
from clipper.services.manual import ManualFallbackHandler
from clipper.services.media import CutResult, MediaTool
from clipper.services.task_store import TaskStore
from clipper.services.transcription import (
    JobHandle,
    JobStatusReport,
    RemoteStatus,
    Transcript,
    TranscriptionAdapter,
)
from clipper.workers.processor import TaskProcessor
from clipper.workers.runtime import Runtime

# ---------------------------------------------------------------------------
# Test database URL: a throwaway SQLite file unless a real server is given
# ---------------------------------------------------------------------------
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeTranscriber(TranscriptionAdapter):
    """Answers every call with a fixed transcript (or error)."""

    def __init__(self, transcript: Transcript | None = None, *, error: Exception | None = None) -> None:
        self.transcript = transcript or Transcript(
            text="hello world",
            segments=[
                SubtitleSegment(start=0.0, end=1.5, text="hello"),
                SubtitleSegment(start=1.5, end=3.0, text="world"),
            ],
        )
        self.error = error
        self.calls: list[str] = []

    async def transcribe(self, audio_location: str, *, video_id: int | None = None) -> Transcript:
        self.calls.append(audio_location)
        if self.error is not None:
            raise self.error
        return self.transcript


class ScriptedJobService(TranscriptionAdapter):
    """Hands out a job handle, then replays ``reports`` (running forever once exhausted)."""

    def __init__(self, reports: list[JobStatusReport] | None = None) -> None:
        self.reports = list(reports or [])
        self.calls: list[str] = []
        self.fetches = 0

    async def transcribe(self, audio_location: str, *, video_id: int | None = None) -> JobHandle:
        self.calls.append(audio_location)
        return JobHandle("job-1")

    async def fetch_status(self, job_id: str) -> JobStatusReport:
        self.fetches += 1
        if self.reports:
            return self.reports.pop(0)
        return JobStatusReport(RemoteStatus.RUNNING)


class FakeHighlighter(HighlightExtractor):
    def __init__(self, reply: str = "[]") -> None:
        self.reply = reply
        self.prompts: list[tuple[str, str]] = []

    async def complete(self, system_prompt: str, user_message: str) -> str:
        self.prompts.append((system_prompt, user_message))
        return self.reply


class FakeMediaTool(MediaTool):
    """Writes placeholder files instead of running ffmpeg."""

    def __init__(self) -> None:
        super().__init__()
        self.cuts: list[tuple[Path, float, float]] = []

    async def cut(self, source: Path, start: float, end: float, output: Path) -> CutResult:
        self.cuts.append((source, start, end))
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b"fake-clip")
        return CutResult(output_location=output, file_size_bytes=9, resolution="1280x720")

    async def extract_audio(self, source: Path, output: Path, fmt: str = "mp3") -> Path:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b"fake-audio")
        return output


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[int, str]] = []

    async def publish(
        self,
        task_id: int,
        status: str,
        *,
        detail: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> int:
        self.events.append((task_id, status))
        return 1

    async def close(self) -> None:
        return None


async def no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Configuration and storage
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    media_root = tmp_path / "public"
    temp_dir = tmp_path / "tmp"
    media_root.mkdir()
    temp_dir.mkdir()
    return Settings(
        _env_file=None,
        DATABASE_URL=TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        OPENAI_API_KEY="test-key",
        PUBLISH_JOB_STATUS=False,
        MEDIA_ROOT=str(media_root),
        TEMP_DIR=str(temp_dir),
        SUBTITLE_POLL_INTERVAL=0.0,
    )


@pytest.fixture
def storage(settings: Settings) -> LocalStorage:
    return LocalStorage(settings.MEDIA_ROOT)


@pytest.fixture
def media_file(settings: Settings):
    """Create a file under the media root and return its public URL."""

    def _make(url: str, data: bytes = b"fake-media") -> str:
        path = Path(settings.MEDIA_ROOT) / url.lstrip("/")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return url

    return _make


# ---------------------------------------------------------------------------
# Per-test database with freshly created tables
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncGenerator[Database, None]:
    database = Database(settings.DATABASE_URL)
    async with database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield database
    await database.dispose()


@pytest.fixture
def store(db: Database) -> TaskStore:
    return TaskStore(db)


@pytest.fixture
def make_video(db: Database):
    async def _make(**fields: Any) -> Video:
        fields.setdefault("title", "Test video")
        video = Video(**fields)
        async with db.begin() as session:
            session.add(video)
            await session.flush()
            await session.refresh(video)
        return video

    return _make


@pytest.fixture
def fetch_video(db: Database):
    async def _fetch(video_id: int) -> Video:
        async with db.begin() as session:
            return await session.get(Video, video_id, populate_existing=True)

    return _fetch


# ---------------------------------------------------------------------------
# Collaborators and processor
# ---------------------------------------------------------------------------

@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber()


@pytest.fixture
def subtitle_service() -> ScriptedJobService:
    return ScriptedJobService()


@pytest.fixture
def highlighter() -> FakeHighlighter:
    return FakeHighlighter()


@pytest.fixture
def media_tool() -> FakeMediaTool:
    return FakeMediaTool()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def processor(
    db: Database,
    store: TaskStore,
    storage: LocalStorage,
    settings: Settings,
    transcriber: FakeTranscriber,
    subtitle_service: ScriptedJobService,
    highlighter: FakeHighlighter,
    media_tool: FakeMediaTool,
    publisher: RecordingPublisher,
) -> TaskProcessor:
    return TaskProcessor(
        db,
        store,
        storage,
        settings=settings,
        transcriber=transcriber,
        subtitle_service=subtitle_service,
        media_tool=media_tool,
        highlight_extractor=highlighter,
        publisher=publisher,
        poll_sleep=no_sleep,
    )


@pytest.fixture
def manual(db: Database, store: TaskStore, storage: LocalStorage, settings: Settings) -> ManualFallbackHandler:
    return ManualFallbackHandler(db, store, storage, settings=settings)


@pytest.fixture
def runtime(
    settings: Settings,
    db: Database,
    store: TaskStore,
    storage: LocalStorage,
    processor: TaskProcessor,
    manual: ManualFallbackHandler,
) -> Runtime:
    return Runtime(
        settings=settings,
        db=db,
        store=store,
        storage=storage,
        processor=processor,
        manual=manual,
    )


# ---------------------------------------------------------------------------
# HTTP test client
# ---------------------------------------------------------------------------

@pytest.fixture
def app(runtime: Runtime) -> FastAPI:
    return create_app(runtime)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Yield an httpx AsyncClient wired to an app around the test runtime."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()

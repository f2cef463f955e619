"""Wiring of the pipeline components for one process."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from clipper.core.config import Settings
from clipper.core.database import Database
from clipper.core.redis import JobStatusPublisher
from clipper.core.storage import ObjectStorage, build_storage
from clipper.services.highlights import build_highlight_extractor
from clipper.services.manual import ManualFallbackHandler
from clipper.services.media import MediaTool
from clipper.services.task_store import TaskStore
from clipper.services.transcription import SubtitleServiceClient, WhisperTranscriber
from clipper.workers.processor import TaskProcessor
from clipper.workers.scheduler import TaskScheduler

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    db: Database
    store: TaskStore
    storage: ObjectStorage
    processor: TaskProcessor
    manual: ManualFallbackHandler
    publisher: JobStatusPublisher | None = None

    def scheduler(self) -> TaskScheduler:
        return TaskScheduler(
            self.store,
            self.processor,
            batch_size=self.settings.BATCH_SIZE,
            loop_interval=self.settings.LOOP_INTERVAL,
            batch_delay=self.settings.BATCH_DELAY,
            error_backoff=self.settings.ERROR_BACKOFF,
            lease_seconds=self.settings.PROCESSING_LEASE_SECONDS,
        )

    async def close(self) -> None:
        await self.processor.subtitle_service.aclose()
        await self.processor.transcriber.aclose()
        await self.processor.highlight_extractor.aclose()
        if self.publisher is not None:
            await self.publisher.close()
        await self.db.dispose()


def build_runtime(settings: Settings) -> Runtime:
    db = Database(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    store = TaskStore(db)
    storage = build_storage(settings)
    publisher = JobStatusPublisher.from_url(settings.REDIS_URL) if settings.PUBLISH_JOB_STATUS else None

    processor = TaskProcessor(
        db,
        store,
        storage,
        settings=settings,
        transcriber=WhisperTranscriber.from_settings(settings),
        subtitle_service=SubtitleServiceClient.from_settings(settings),
        media_tool=MediaTool.from_settings(settings),
        highlight_extractor=build_highlight_extractor(settings),
        publisher=publisher,
    )
    manual = ManualFallbackHandler(db, store, storage, settings=settings, publisher=publisher)
    logger.debug("Runtime built (storage=%s)", type(storage).__name__)
    return Runtime(
        settings=settings,
        db=db,
        store=store,
        storage=storage,
        processor=processor,
        manual=manual,
        publisher=publisher,
    )

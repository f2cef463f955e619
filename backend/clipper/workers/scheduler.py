"""Polling loop that drains the pending queue in small concurrent batches."""

from __future__ import annotations

import asyncio
import logging

from clipper.models.task import TaskStatus
from clipper.services.task_store import TaskStore
from clipper.workers.processor import TaskProcessor

logger = logging.getLogger(__name__)


class TaskScheduler:
    """Fetch up to ``batch_size`` pending tasks, run them together, sleep, repeat.

    Sleeps wait on the stop event, so :meth:`stop` interrupts an idle loop
    immediately while a batch that is already running is always awaited.
    """

    def __init__(
        self,
        store: TaskStore,
        processor: TaskProcessor,
        *,
        batch_size: int = 5,
        loop_interval: float = 30.0,
        batch_delay: float = 2.0,
        error_backoff: float = 10.0,
        lease_seconds: float = 1800,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.processor = processor
        self.batch_size = batch_size
        self.loop_interval = loop_interval
        self.batch_delay = batch_delay
        self.error_backoff = error_backoff
        self.lease_seconds = lease_seconds
        self._stop = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Stop requested, finishing current batch")
        self._stop.set()

    async def _sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run_once(self) -> int:
        """Run one cycle and return the number of tasks fetched."""
        if self.lease_seconds:
            await self.store.reap_expired(self.lease_seconds)

        batch = await self.store.claim_batch(self.batch_size, TaskStatus.PENDING)
        if not batch:
            return 0

        logger.info("Fetched %d pending task(s)", len(batch))
        results = await asyncio.gather(
            *(self.processor.process(task) for task in batch),
            return_exceptions=True,
        )
        errors = []
        for task, outcome in zip(batch, results):
            if isinstance(outcome, BaseException):
                errors.append(outcome)
                logger.error(
                    "Task %s aborted outside its handler: %r", task.id, outcome,
                    exc_info=outcome,
                )
        # A whole batch failing outside the handlers points at the datastore,
        # so let run_forever back off instead of polling again after batch_delay.
        if len(errors) == len(batch):
            raise errors[0]
        return len(batch)

    async def run_forever(self) -> None:
        logger.info(
            "Scheduler started (batch_size=%d, loop_interval=%ss)",
            self.batch_size, self.loop_interval,
        )
        while not self._stop.is_set():
            try:
                fetched = await self.run_once()
            except Exception:
                logger.exception("Scheduler cycle failed, backing off %ss", self.error_backoff)
                await self._sleep(self.error_backoff)
                continue

            if fetched == 0:
                logger.debug("No pending tasks, sleeping %ss", self.loop_interval)
                await self._sleep(self.loop_interval)
            else:
                await self._sleep(self.batch_delay)
        logger.info("Scheduler stopped")

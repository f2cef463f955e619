"""Celery task definitions.

Celery workers are synchronous, so each task drives the async pipeline with
``asyncio.run`` and builds (and disposes) its own runtime per invocation.
Tasks are never retried by Celery: a failed task is terminal until an
operator re-enqueues it.
"""

from __future__ import annotations

import asyncio
import logging

from clipper.core.config import settings
from clipper.workers.celery_app import celery_app
from clipper.workers.runtime import build_runtime

logger = logging.getLogger(__name__)


async def _process(task_id: int) -> str | None:
    runtime = build_runtime(settings)
    try:
        status = await runtime.processor.process_by_id(task_id)
    finally:
        await runtime.close()
    return status.value if status is not None else None


async def _reap() -> int:
    runtime = build_runtime(settings)
    try:
        return await runtime.store.reap_expired(settings.PROCESSING_LEASE_SECONDS)
    finally:
        await runtime.close()


# =========================================================================
# Task: process_task
# =========================================================================

@celery_app.task(name="clipper.workers.tasks.process_task")
def process_task(task_id: int) -> dict:
    """Run one pending pipeline task to completion."""
    logger.info("process_task started for task %s", task_id)
    status = asyncio.run(_process(task_id))
    if status is None:
        logger.info("Task %s was already claimed elsewhere", task_id)
    return {"task_id": task_id, "status": status}


# =========================================================================
# Task: reap_stale_tasks
# =========================================================================

@celery_app.task(name="clipper.workers.tasks.reap_stale_tasks")
def reap_stale_tasks() -> dict:
    """Fail processing tasks whose lease has expired."""
    reaped = asyncio.run(_reap())
    return {"reaped": reaped}

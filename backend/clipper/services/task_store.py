"""Persistent record of pipeline tasks and their lifecycle.

The conditional :meth:`TaskStore.transition` is the only concurrency-control
primitive of the pipeline: every status change is a single
``UPDATE ... WHERE id = :id AND status = :from_status`` and a zero row count
means another actor got there first.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clipper.core.database import Database
from clipper.core.exceptions import (
    ERROR_MESSAGE_LIMIT,
    InvalidStateError,
    StaleTaskError,
    TaskNotFoundError,
    ValidationError,
)
from clipper.models.task import Task, TaskStatus, TaskType, utcnow
from clipper.schemas.task import task_result_adapter

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "LeaseExpiredError: processing lease expired"

# Edges of the task state machine.  pending -> completed / failed is only
# taken by the manual fallback path.
ALLOWED_TRANSITIONS: frozenset[tuple[TaskStatus, TaskStatus]] = frozenset({
    (TaskStatus.PENDING, TaskStatus.PROCESSING),
    (TaskStatus.PROCESSING, TaskStatus.COMPLETED),
    (TaskStatus.PROCESSING, TaskStatus.FAILED),
    (TaskStatus.PENDING, TaskStatus.COMPLETED),
    (TaskStatus.PENDING, TaskStatus.FAILED),
})

_MUTABLE_FIELDS = frozenset({"result", "error"})

# Task types that can run without any media location on the task itself.
_MEDIA_OPTIONAL = frozenset({TaskType.HIGHLIGHT_EXTRACTION, TaskType.CLIP_GENERATION})


class TaskStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    @asynccontextmanager
    async def _scope(self, session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        """Use the caller's session, or run in a transaction of our own."""
        if session is not None:
            yield session
            return
        async with self.db.begin() as own:
            yield own

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        task_type: TaskType | str | None,
        video_id: int | None,
        media_url: str | None = None,
        *,
        local_audio_url: str | None = None,
        obs_audio_url: str | None = None,
        params: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
    ) -> Task:
        """Create a pending task.

        Raises :class:`ValidationError` when the type is missing or unknown,
        the video id is missing, or the task has no input location at all.
        """
        if not task_type:
            raise ValidationError("Task type is required")
        try:
            task_type = TaskType(task_type)
        except ValueError:
            raise ValidationError(f"Unknown task type: {task_type}") from None
        if video_id is None:
            raise ValidationError("video_id is required")

        has_location = bool(media_url)
        if task_type is TaskType.TRANSCRIPTION:
            has_location = has_location or bool(local_audio_url or obs_audio_url)
        if not has_location and task_type not in _MEDIA_OPTIONAL:
            raise ValidationError(f"{task_type.value} task requires a media_url")

        task = Task(
            type=task_type.value,
            status=TaskStatus.PENDING.value,
            video_id=video_id,
            media_url=media_url,
            local_audio_url=local_audio_url,
            obs_audio_url=obs_audio_url,
            input_params=dict(params or {}),
        )
        async with self._scope(session) as s:
            s.add(task)
            await s.flush()
            await s.refresh(task)

        logger.info("Enqueued task %s (%s) for video %s", task.id, task.type, video_id)
        return task

    async def transition(
        self,
        task_id: int,
        from_status: TaskStatus,
        to_status: TaskStatus,
        *,
        session: AsyncSession | None = None,
        **fields: Any,
    ) -> Task:
        """Move a task from ``from_status`` to ``to_status`` atomically.

        Raises :class:`StaleTaskError` when the task is not (or no longer) in
        ``from_status`` and :class:`InvalidStateError` for an edge the state
        machine does not have.
        """
        from_status = TaskStatus(from_status)
        to_status = TaskStatus(to_status)
        if (from_status, to_status) not in ALLOWED_TRANSITIONS:
            raise InvalidStateError(
                f"Transition {from_status.value} -> {to_status.value} is not allowed"
            )
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot set task fields: {', '.join(sorted(unknown))}")

        now = utcnow()
        values: dict[str, Any] = {"status": to_status.value, "updated_at": now}

        if to_status is TaskStatus.PROCESSING:
            values["claimed_at"] = now
        elif to_status is TaskStatus.COMPLETED:
            result = fields.get("result")
            if result is None:
                raise ValueError("A completed task requires a result")
            try:
                task_result_adapter.validate_python(result)
            except PydanticValidationError as exc:
                raise ValueError(f"Result does not match any task result schema: {exc}") from exc
            values.update(result=result, error=None, processed_at=now)
        elif to_status is TaskStatus.FAILED:
            error = fields.get("error")
            if not error:
                raise ValueError("A failed task requires an error message")
            values.update(result=None, error=str(error)[:ERROR_MESSAGE_LIMIT], processed_at=now)

        stmt = (
            update(Task)
            .where(Task.id == task_id, Task.status == from_status.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._scope(session) as s:
            res = await s.execute(stmt)
            if res.rowcount != 1:
                current = await s.get(Task, task_id)
                if current is None:
                    raise TaskNotFoundError(f"Task {task_id} not found")
                raise StaleTaskError(
                    f"Task {task_id} is {current.status}, expected {from_status.value}"
                )
            task = await s.get(Task, task_id, populate_existing=True)

        logger.debug("Task %s: %s -> %s", task_id, from_status.value, to_status.value)
        return task

    async def reap_expired(
        self,
        lease_seconds: float,
        *,
        session: AsyncSession | None = None,
    ) -> int:
        """Fail processing tasks whose claim is older than ``lease_seconds``.

        Reaped tasks move forward to ``failed``; they never re-enter pending.
        """
        if lease_seconds <= 0:
            return 0
        now = utcnow()
        cutoff = now - timedelta(seconds=lease_seconds)
        stmt = (
            update(Task)
            .where(
                Task.status == TaskStatus.PROCESSING.value,
                Task.claimed_at.is_not(None),
                Task.claimed_at < cutoff,
            )
            .values(
                status=TaskStatus.FAILED.value,
                error=LEASE_EXPIRED_ERROR,
                result=None,
                processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._scope(session) as s:
            res = await s.execute(stmt)
        if res.rowcount:
            logger.warning("Reaped %d task(s) with expired processing lease", res.rowcount)
        return res.rowcount or 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def claim_batch(
        self,
        limit: int,
        status: TaskStatus = TaskStatus.PENDING,
        *,
        session: AsyncSession | None = None,
    ) -> list[Task]:
        """Return up to ``limit`` oldest tasks in ``status``.

        This is a plain read: claiming each task is a separate
        :meth:`transition` so one lost race never affects the rest of the
        batch.
        """
        stmt = (
            select(Task)
            .where(Task.status == TaskStatus(status).value)
            .order_by(Task.created_at.asc(), Task.id.asc())
            .limit(limit)
        )
        async with self._scope(session) as s:
            result = await s.execute(stmt)
            return list(result.scalars().all())

    async def find_by_id(self, task_id: int, *, session: AsyncSession | None = None) -> Task | None:
        async with self._scope(session) as s:
            return await s.get(Task, task_id, populate_existing=True)

    async def find_by_video_id(
        self,
        video_id: int,
        *,
        session: AsyncSession | None = None,
    ) -> list[Task]:
        stmt = select(Task).where(Task.video_id == video_id).order_by(Task.created_at.desc())
        async with self._scope(session) as s:
            result = await s.execute(stmt)
            return list(result.scalars().all())

    async def find_by_status(
        self,
        status: TaskStatus | str | None = None,
        *,
        task_type: TaskType | str | None = None,
        limit: int = 50,
        offset: int = 0,
        session: AsyncSession | None = None,
    ) -> list[Task]:
        """List tasks newest first, optionally filtered by status and type."""
        stmt = select(Task)
        if status:
            stmt = stmt.where(Task.status == TaskStatus(status).value)
        if task_type:
            stmt = stmt.where(Task.type == TaskType(task_type).value)
        stmt = stmt.order_by(Task.created_at.desc(), Task.id.desc()).offset(offset).limit(limit)
        async with self._scope(session) as s:
            result = await s.execute(stmt)
            return list(result.scalars().all())

    async def count_by_status(
        self,
        status: TaskStatus | str,
        *,
        session: AsyncSession | None = None,
    ) -> int:
        stmt = select(func.count()).select_from(Task).where(Task.status == TaskStatus(status).value)
        async with self._scope(session) as s:
            return int((await s.execute(stmt)).scalar_one())


from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from clipper.api.v1.deps import Dispatcher, get_dispatcher, get_runtime
from clipper.core.database import get_db
from clipper.core.exceptions import (
    InvalidStateError,
    StaleTaskError,
    TaskNotFoundError,
    ValidationError,
)
from clipper.models.task import Task, TaskStatus, TaskType
from clipper.models.video import Video
from clipper.schemas.task import (
    ManualProcessResponse,
    ProcessDispatchResponse,
    TaskCreate,
    TaskDetailResponse,
    TaskListResponse,
    TaskResponse,
    VideoSummary,
)
from clipper.workers.runtime import Runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"])


async def _get_task_or_404(runtime: Runtime, task_id: int, db: AsyncSession) -> Task:
    task = await runtime.store.find_by_id(task_id, session=db)
    if task is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Task not found",
        )
    return task


# ---------------------------------------------------------------------------
# POST /tasks
# ---------------------------------------------------------------------------
@router.post("", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    body: TaskCreate,
    runtime: Runtime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> Task:
    """Enqueue a pending task for an existing video."""
    if await db.get(Video, body.video_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Video not found",
        )
    try:
        return await runtime.store.enqueue(
            body.type,
            body.video_id,
            body.media_url,
            local_audio_url=body.local_audio_url,
            obs_audio_url=body.obs_audio_url,
            params=body.params,
            session=db,
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc


# ---------------------------------------------------------------------------
# GET /tasks
# ---------------------------------------------------------------------------
@router.get("", response_model=TaskListResponse)
async def list_tasks(
    task_status: Optional[TaskStatus] = Query(None, alias="status"),
    task_type: Optional[TaskType] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    runtime: Runtime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> TaskListResponse:
    """List tasks newest first, with the current pending backlog size."""
    tasks = await runtime.store.find_by_status(
        task_status, task_type=task_type, limit=limit, offset=offset, session=db
    )
    total_pending = await runtime.store.count_by_status(TaskStatus.PENDING, session=db)
    return TaskListResponse(
        tasks=[TaskResponse.model_validate(t) for t in tasks],
        count=len(tasks),
        total_pending=total_pending,
    )


# ---------------------------------------------------------------------------
# GET /tasks/{task_id}
# ---------------------------------------------------------------------------
@router.get("/{task_id}", response_model=TaskDetailResponse)
async def get_task(
    task_id: int,
    runtime: Runtime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> TaskDetailResponse:
    task = await _get_task_or_404(runtime, task_id, db)
    video = await db.get(Video, task.video_id)
    return TaskDetailResponse(
        task=TaskResponse.model_validate(task),
        video=VideoSummary.model_validate(video) if video is not None else None,
    )


# ---------------------------------------------------------------------------
# POST /tasks/{task_id}/process
# ---------------------------------------------------------------------------
@router.post(
    "/{task_id}/process",
    response_model=ProcessDispatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def process_task_now(
    task_id: int,
    runtime: Runtime = Depends(get_runtime),
    dispatch: Dispatcher = Depends(get_dispatcher),
    db: AsyncSession = Depends(get_db),
) -> ProcessDispatchResponse:
    """Queue a pending task on the Celery ``pipeline`` queue."""
    task = await _get_task_or_404(runtime, task_id, db)
    if task.task_status is not TaskStatus.PENDING:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Task is {task.status}, not pending",
        )
    celery_task_id = dispatch(task.id)
    logger.info("Dispatched task %s to Celery (%s)", task.id, celery_task_id)
    return ProcessDispatchResponse(task_id=task.id, celery_task_id=celery_task_id)


# ---------------------------------------------------------------------------
# POST /tasks/{task_id}/manual-process
# ---------------------------------------------------------------------------
@router.post("/{task_id}/manual-process", response_model=ManualProcessResponse)
async def manual_process(
    task_id: int,
    subtitle_file: Optional[UploadFile] = File(None),
    storage_location: Optional[str] = Form(None),
    runtime: Runtime = Depends(get_runtime),
) -> ManualProcessResponse:
    """Complete a pending task from an operator-supplied artifact."""
    artifact = await subtitle_file.read() if subtitle_file is not None else None
    filename = subtitle_file.filename if subtitle_file is not None else None

    try:
        outcome = await runtime.manual.complete(
            task_id,
            artifact=artifact,
            filename=filename,
            storage_location=storage_location,
        )
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (InvalidStateError, StaleTaskError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Task processing failed", "message": str(exc)},
        ) from exc

    return ManualProcessResponse(
        message=outcome.message,
        task=TaskResponse.model_validate(outcome.task),
        audio_url=outcome.audio_url,
        subtitle_url=outcome.subtitle_url,
    )


# ---------------------------------------------------------------------------
# POST /tasks/{task_id}/retry
# ---------------------------------------------------------------------------
@router.post("/{task_id}/retry", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def retry_task(
    task_id: int,
    runtime: Runtime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> Task:
    """Enqueue a fresh pending copy of a failed task."""
    task = await _get_task_or_404(runtime, task_id, db)
    if task.task_status is not TaskStatus.FAILED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only failed tasks can be retried (task is {task.status})",
        )
    retried = await runtime.store.enqueue(
        task.type,
        task.video_id,
        task.media_url,
        local_audio_url=task.local_audio_url,
        obs_audio_url=task.obs_audio_url,
        params=task.input_params,
        session=db,
    )
    logger.info("Task %s re-enqueued as %s", task.id, retried.id)
    return retried

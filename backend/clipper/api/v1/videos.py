from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from clipper.api.v1.deps import get_runtime
from clipper.core.database import get_db
from clipper.models.task import Task
from clipper.models.video import Video
from clipper.schemas.task import TaskResponse
from clipper.workers.runtime import Runtime

router = APIRouter(prefix="/videos", tags=["videos"])


# ---------------------------------------------------------------------------
# GET /videos/{video_id}/tasks
# ---------------------------------------------------------------------------
@router.get("/{video_id}/tasks", response_model=List[TaskResponse])
async def list_video_tasks(
    video_id: int,
    runtime: Runtime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> list[Task]:
    if await db.get(Video, video_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Video not found",
        )
    return await runtime.store.find_by_video_id(video_id, session=db)

from __future__ import annotations

from fastapi import APIRouter

from clipper.api.v1.tasks import router as tasks_router
from clipper.api.v1.videos import router as videos_router

api_v1_router = APIRouter()

api_v1_router.include_router(tasks_router)
api_v1_router.include_router(videos_router)

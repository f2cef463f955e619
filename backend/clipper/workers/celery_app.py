from __future__ import annotations

from celery import Celery

from clipper.core.config import settings

celery_app = Celery(
    "clipper",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

# ---------------------------------------------------------------------------
# Task routing -- pipeline work runs on its own queue
# ---------------------------------------------------------------------------
celery_app.conf.task_routes = {
    "clipper.workers.tasks.process_task": {"queue": "pipeline"},
    "clipper.workers.tasks.reap_stale_tasks": {"queue": "pipeline"},
}

# ---------------------------------------------------------------------------
# General Celery configuration
# ---------------------------------------------------------------------------
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=86400,  # 24 hours
)

celery_app.autodiscover_tasks(["clipper.workers"])

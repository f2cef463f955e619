from __future__ import annotations

from typing import Callable

from fastapi import Request

from clipper.workers.runtime import Runtime

Dispatcher = Callable[[int], str]


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_dispatcher() -> Dispatcher:
    """Return a callable that queues a task on Celery and returns the Celery id."""
    from clipper.workers.tasks import process_task

    def dispatch(task_id: int) -> str:
        return process_task.delay(task_id).id

    return dispatch

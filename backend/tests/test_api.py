"""Tests for the operator task endpoints."""

import json

import pytest
from httpx import AsyncClient

from clipper.api.v1.deps import get_dispatcher
from clipper.models.task import TaskStatus, TaskType


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_create_task(client: AsyncClient, make_video):
    video = await make_video()
    resp = await client.post(
        "/api/v1/tasks",
        json={"type": "audio_extraction", "video_id": video.id, "media_url": "/uploads/v.mp4"},
    )
    assert resp.status_code == 201
    data = resp.json()
    assert data["status"] == "pending"
    assert data["type"] == "audio_extraction"
    assert data["video_id"] == video.id
    assert data["result"] is None


@pytest.mark.asyncio
async def test_create_task_video_not_found(client: AsyncClient):
    resp = await client.post(
        "/api/v1/tasks",
        json={"type": "audio_extraction", "video_id": 999999, "media_url": "/uploads/v.mp4"},
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_create_task_without_location(client: AsyncClient, make_video):
    video = await make_video()
    resp = await client.post(
        "/api/v1/tasks", json={"type": "audio_extraction", "video_id": video.id}
    )
    assert resp.status_code == 422
    assert "media_url" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_create_task_unknown_type(client: AsyncClient, make_video):
    video = await make_video()
    resp = await client.post(
        "/api/v1/tasks", json={"type": "teleport", "video_id": video.id}
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_list_tasks_filters(client: AsyncClient, store, make_video):
    video = await make_video()
    audio = await store.enqueue(TaskType.AUDIO_EXTRACTION, video.id, "/uploads/v.mp4")
    await store.enqueue(TaskType.HIGHLIGHT_EXTRACTION, video.id)
    await store.transition(audio.id, TaskStatus.PENDING, TaskStatus.PROCESSING)

    resp = await client.get("/api/v1/tasks", params={"status": "pending"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["count"] == 1
    assert data["total_pending"] == 1
    assert data["tasks"][0]["type"] == "highlight_extraction"

    resp = await client.get("/api/v1/tasks", params={"type": "audio_extraction"})
    assert [t["id"] for t in resp.json()["tasks"]] == [audio.id]


@pytest.mark.asyncio
async def test_list_tasks_limit_bounds(client: AsyncClient):
    resp = await client.get("/api/v1/tasks", params={"limit": 0})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_get_task_detail(client: AsyncClient, store, make_video):
    video = await make_video(title="Keynote")
    task = await store.enqueue(TaskType.AUDIO_EXTRACTION, video.id, "/uploads/v.mp4")

    resp = await client.get(f"/api/v1/tasks/{task.id}")
    assert resp.status_code == 200
    data = resp.json()
    assert data["task"]["id"] == task.id
    assert data["video"]["title"] == "Keynote"


@pytest.mark.asyncio
async def test_get_task_not_found(client: AsyncClient):
    resp = await client.get("/api/v1/tasks/999999")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_process_dispatches_pending_task(app, client: AsyncClient, store, make_video):
    dispatched = []

    def fake_dispatch(task_id: int) -> str:
        dispatched.append(task_id)
        return "celery-123"

    app.dependency_overrides[get_dispatcher] = lambda: fake_dispatch
    video = await make_video()
    task = await store.enqueue(TaskType.AUDIO_EXTRACTION, video.id, "/uploads/v.mp4")

    resp = await client.post(f"/api/v1/tasks/{task.id}/process")
    assert resp.status_code == 202
    assert resp.json() == {"task_id": task.id, "celery_task_id": "celery-123"}
    assert dispatched == [task.id]


@pytest.mark.asyncio
async def test_process_rejects_non_pending(app, client: AsyncClient, store, make_video):
    app.dependency_overrides[get_dispatcher] = lambda: (lambda task_id: "unused")
    video = await make_video()
    task = await store.enqueue(TaskType.AUDIO_EXTRACTION, video.id, "/uploads/v.mp4")
    await store.transition(task.id, TaskStatus.PENDING, TaskStatus.PROCESSING)

    resp = await client.post(f"/api/v1/tasks/{task.id}/process")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_manual_process_subtitle_upload(client: AsyncClient, store, make_video):
    video = await make_video()
    task = await store.enqueue(TaskType.SUBTITLE_GENERATION, video.id, "/uploads/v.mp4")
    upload = json.dumps([{"start": 0, "end": 2, "text": "hi"}]).encode()

    resp = await client.post(
        f"/api/v1/tasks/{task.id}/manual-process",
        files={"subtitle_file": ("subs.json", upload, "application/json")},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["message"] == "Subtitles saved"
    assert data["task"]["status"] == "completed"
    assert data["subtitle_url"] == f"/processed/subtitles/subtitle_{video.id}.srt"


@pytest.mark.asyncio
async def test_manual_process_audio_copy(client: AsyncClient, store, make_video, media_file):
    video = await make_video()
    media_file("/uploads/v.mp3")
    task = await store.enqueue(TaskType.AUDIO_EXTRACTION, video.id, "/uploads/v.mp3")

    resp = await client.post(
        f"/api/v1/tasks/{task.id}/manual-process",
        data={"storage_location": "manual/audio"},
    )
    assert resp.status_code == 200
    assert resp.json()["audio_url"] == f"/manual/audio/audio_{video.id}.mp3"


@pytest.mark.asyncio
async def test_manual_process_conflict(client: AsyncClient, store, make_video):
    video = await make_video()
    task = await store.enqueue(TaskType.HIGHLIGHT_EXTRACTION, video.id)

    resp = await client.post(f"/api/v1/tasks/{task.id}/manual-process")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_manual_process_missing_file_fails_task(client: AsyncClient, store, make_video):
    video = await make_video()
    task = await store.enqueue(TaskType.SUBTITLE_GENERATION, video.id, "/uploads/v.mp4")

    resp = await client.post(f"/api/v1/tasks/{task.id}/manual-process")
    assert resp.status_code == 500
    assert resp.json()["detail"]["error"] == "Task processing failed"
    assert (await store.find_by_id(task.id)).status == "failed"


@pytest.mark.asyncio
async def test_manual_process_not_found(client: AsyncClient):
    resp = await client.post("/api/v1/tasks/999999/manual-process")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_retry_failed_task(client: AsyncClient, store, make_video):
    video = await make_video()
    task = await store.enqueue(
        TaskType.CLIP_GENERATION, video.id, "/uploads/v.mp4", params={"start_time": 1, "end_time": 4}
    )
    await store.transition(task.id, TaskStatus.PENDING, TaskStatus.PROCESSING)
    await store.transition(task.id, TaskStatus.PROCESSING, TaskStatus.FAILED, error="MediaToolError: boom")

    resp = await client.post(f"/api/v1/tasks/{task.id}/retry")
    assert resp.status_code == 201
    data = resp.json()
    assert data["id"] != task.id
    assert data["status"] == "pending"
    assert data["input_params"] == {"start_time": 1, "end_time": 4}

    # The failed original is left as history
    assert (await store.find_by_id(task.id)).status == "failed"


@pytest.mark.asyncio
async def test_retry_rejects_pending_task(client: AsyncClient, store, make_video):
    video = await make_video()
    task = await store.enqueue(TaskType.AUDIO_EXTRACTION, video.id, "/uploads/v.mp4")

    resp = await client.post(f"/api/v1/tasks/{task.id}/retry")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_list_video_tasks(client: AsyncClient, store, make_video):
    video = await make_video()
    other = await make_video()
    await store.enqueue(TaskType.AUDIO_EXTRACTION, video.id, "/uploads/v.mp4")
    await store.enqueue(TaskType.HIGHLIGHT_EXTRACTION, video.id)
    await store.enqueue(TaskType.HIGHLIGHT_EXTRACTION, other.id)

    resp = await client.get(f"/api/v1/videos/{video.id}/tasks")
    assert resp.status_code == 200
    assert {t["type"] for t in resp.json()} == {"audio_extraction", "highlight_extraction"}


@pytest.mark.asyncio
async def test_list_video_tasks_not_found(client: AsyncClient):
    resp = await client.get("/api/v1/videos/999999/tasks")
    assert resp.status_code == 404

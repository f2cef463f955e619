from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from clipper.models.task import TaskType
from clipper.schemas.media import Clip, Highlight, SubtitleSegment

# ---------------------------------------------------------------------------
# Task results: one variant per task type, tagged by ``task_type``
# ---------------------------------------------------------------------------


class AudioExtractionResult(BaseModel):
    task_type: Literal["audio_extraction"] = "audio_extraction"
    audio_url: str


class TranscriptionResult(BaseModel):
    task_type: Literal["transcription"] = "transcription"
    text: str
    subtitles: List[SubtitleSegment]


class SubtitleResult(BaseModel):
    task_type: Literal["subtitle_generation"] = "subtitle_generation"
    subtitles: Optional[List[SubtitleSegment]] = None
    subtitle_url: Optional[str] = None


class HighlightResult(BaseModel):
    task_type: Literal["highlight_extraction"] = "highlight_extraction"
    highlights: List[Highlight]


class ClipResult(BaseModel):
    task_type: Literal["clip_generation"] = "clip_generation"
    clip: Clip


TaskResult = Annotated[
    Union[
        AudioExtractionResult,
        TranscriptionResult,
        SubtitleResult,
        HighlightResult,
        ClipResult,
    ],
    Field(discriminator="task_type"),
]

task_result_adapter: TypeAdapter[TaskResult] = TypeAdapter(TaskResult)


def dump_result(result: BaseModel) -> dict:
    """Serialise a result variant for the JSON ``Task.result`` column."""
    return result.model_dump(mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class TaskCreate(BaseModel):
    type: TaskType
    video_id: int
    media_url: Optional[str] = None
    local_audio_url: Optional[str] = None
    obs_audio_url: Optional[str] = None
    params: Dict = {}


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    status: str
    video_id: int
    media_url: Optional[str]
    local_audio_url: Optional[str]
    obs_audio_url: Optional[str]
    input_params: Dict
    result: Optional[Dict]
    error: Optional[str]
    created_at: datetime
    updated_at: datetime
    claimed_at: Optional[datetime]
    processed_at: Optional[datetime]


class TaskListResponse(BaseModel):
    tasks: List[TaskResponse]
    count: int
    total_pending: int


class VideoSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    status: str
    audio_url: Optional[str]
    subtitle_url: Optional[str]
    has_subtitles: bool


class TaskDetailResponse(BaseModel):
    task: TaskResponse
    video: Optional[VideoSummary]


class ProcessDispatchResponse(BaseModel):
    task_id: int
    celery_task_id: str


class ManualProcessResponse(BaseModel):
    success: bool = True
    message: str
    task: TaskResponse
    audio_url: Optional[str] = None
    subtitle_url: Optional[str] = None

from clipper.schemas.media import Clip, ClipRequest, Highlight, HighlightRequest, SubtitleSegment
from clipper.schemas.task import (
    AudioExtractionResult,
    ClipResult,
    HighlightResult,
    ManualProcessResponse,
    ProcessDispatchResponse,
    SubtitleResult,
    TaskCreate,
    TaskDetailResponse,
    TaskListResponse,
    TaskResponse,
    TaskResult,
    TranscriptionResult,
    VideoSummary,
)

__all__ = [
    "AudioExtractionResult",
    "Clip",
    "ClipRequest",
    "ClipResult",
    "Highlight",
    "HighlightRequest",
    "HighlightResult",
    "ManualProcessResponse",
    "ProcessDispatchResponse",
    "SubtitleResult",
    "SubtitleSegment",
    "TaskCreate",
    "TaskDetailResponse",
    "TaskListResponse",
    "TaskResponse",
    "TaskResult",
    "TranscriptionResult",
    "VideoSummary",
]

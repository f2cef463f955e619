from clipper.models.task import Task, TaskStatus, TaskType
from clipper.models.video import Video, VideoStatus

__all__ = [
    "Task",
    "TaskStatus",
    "TaskType",
    "Video",
    "VideoStatus",
]

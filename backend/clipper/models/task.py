from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clipper.core.database import Base, JSONType

if TYPE_CHECKING:
    from clipper.models.video import Video


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskType(str, enum.Enum):
    SUBTITLE_GENERATION = "subtitle_generation"
    AUDIO_EXTRACTION = "audio_extraction"
    TRANSCRIPTION = "transcription"
    HIGHLIGHT_EXTRACTION = "highlight_extraction"
    CLIP_GENERATION = "clip_generation"


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class Task(Base):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_status_created_at", "status", "created_at"),
        Index("ix_tasks_type_status", "type", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TaskStatus.PENDING.value
    )
    video_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("videos.id", ondelete="CASCADE"), nullable=False, index=True
    )
    media_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    local_audio_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    obs_audio_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    input_params: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    video: Mapped["Video"] = relationship("Video", back_populates="tasks", lazy="raise")

    @property
    def task_type(self) -> TaskType:
        return TaskType(self.type)

    @property
    def task_status(self) -> TaskStatus:
        return TaskStatus(self.status)

    def __repr__(self) -> str:
        return f"<Task id={self.id} type={self.type} status={self.status}>"

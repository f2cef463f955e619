from __future__ import annotations

import enum
from datetime import datetime
from typing import TYPE_CHECKING, List

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clipper.core.database import Base, JSONType
from clipper.models.task import utcnow

if TYPE_CHECKING:
    from clipper.models.task import Task


class VideoStatus(str, enum.Enum):
    UPLOADED = "uploaded"
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class Video(Base):
    """The owning video of pipeline tasks.

    Upload and playback live outside the pipeline; tasks only touch the audio,
    subtitle, highlight and clip fields (and ``status`` on blocking failures).
    """

    __tablename__ = "videos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=VideoStatus.UPLOADED.value
    )
    duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    audio_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    obs_audio_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    subtitles: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    subtitle_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    has_subtitles: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    highlights: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    clips: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    # Relationships
    tasks: Mapped[List["Task"]] = relationship(
        "Task", back_populates="video", lazy="raise"
    )

    def __repr__(self) -> str:
        return f"<Video id={self.id} status={self.status}>"

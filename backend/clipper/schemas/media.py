"""Shapes embedded in a Video: subtitle segments, highlights and clips."""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, StrictStr, field_validator, model_validator


def _require_number(value: Any) -> Any:
    # bool is an int subclass; "12.5" is not a number either
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("must be a number")
    return value


class SubtitleSegment(BaseModel):
    start: float
    end: float
    text: StrictStr

    @field_validator("start", "end", mode="before")
    @classmethod
    def _numeric(cls, value: Any) -> Any:
        return _require_number(value)

    @model_validator(mode="after")
    def _ordered(self) -> "SubtitleSegment":
        if self.end < self.start:
            raise ValueError("end must not precede start")
        return self


class Highlight(BaseModel):
    """A high-value time range proposed by the LLM."""

    start: float
    end: float
    text: StrictStr
    reason: StrictStr

    @field_validator("start", "end", mode="before")
    @classmethod
    def _numeric(cls, value: Any) -> Any:
        return _require_number(value)

    @model_validator(mode="after")
    def _ordered(self) -> "Highlight":
        if self.end <= self.start:
            raise ValueError("end must be greater than start")
        return self


class Clip(BaseModel):
    id: str
    url: str
    start: float
    end: float
    text: str = ""
    reason: str = ""
    duration: float
    source_video_id: int
    source_video_title: str = ""
    file_size: int = 0
    resolution: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ClipRequest(BaseModel):
    """``input_params`` of a clip_generation task."""

    start: float = Field(ge=0)
    end: float
    text: str = ""
    reason: str = ""

    @model_validator(mode="after")
    def _ordered(self) -> "ClipRequest":
        if self.end <= self.start:
            raise ValueError("end must be greater than start")
        return self


class HighlightRequest(BaseModel):
    """``input_params`` of a highlight_extraction task."""

    min_duration: Optional[float] = Field(default=None, gt=0)
    max_duration: Optional[float] = Field(default=None, gt=0)

"""Subtitle rendering and parsing (SRT and JSON segment documents)."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from clipper.schemas.media import SubtitleSegment

logger = logging.getLogger(__name__)

_SRT_TIME_RE = re.compile(r"(\d+):(\d{1,2}):(\d{1,2})[,.](\d{1,3})")
_SRT_RANGE_RE = re.compile(
    r"(\d+:\d{1,2}:\d{1,2}[,.]\d{1,3})\s*-->\s*(\d+:\d{1,2}:\d{1,2}[,.]\d{1,3})"
)

_segments_adapter = TypeAdapter(list[SubtitleSegment])


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def format_srt_timestamp(seconds: float) -> str:
    """Format seconds as an SRT timestamp ``HH:MM:SS,mmm``."""
    ms = max(0, int(round(seconds * 1000)))
    total_s = ms // 1000
    h = total_s // 3600
    m = (total_s % 3600) // 60
    s = total_s % 60
    millis = ms % 1000
    return f"{h:02d}:{m:02d}:{s:02d},{millis:03d}"


def parse_srt_timestamp(value: str | float | int) -> float:
    """Parse ``HH:MM:SS,mmm`` (or ``HH:MM:SS.mmm``) into seconds.

    Numbers pass through unchanged.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    match = _SRT_TIME_RE.fullmatch(str(value).strip())
    if not match:
        raise ValueError(f"Invalid SRT timestamp: {value!r}")
    h, m, s, frac = match.groups()
    # "5" after the separator means 500 ms, not 5 ms
    millis = int(frac.ljust(3, "0"))
    return int(h) * 3600 + int(m) * 60 + int(s) + millis / 1000


# ---------------------------------------------------------------------------
# SRT
# ---------------------------------------------------------------------------

def render_srt(segments: list[SubtitleSegment]) -> str:
    """Render segments as an SRT document.

    Each block is the 1-based index, the time range, the text and a blank
    line.
    """
    blocks: list[str] = []
    for idx, seg in enumerate(segments, start=1):
        blocks.append(
            f"{idx}\n"
            f"{format_srt_timestamp(seg.start)} --> {format_srt_timestamp(seg.end)}\n"
            f"{seg.text.strip()}\n"
        )
    return "\n".join(blocks) + ("\n" if blocks else "")


def parse_srt(content: str) -> list[SubtitleSegment]:
    """Parse an SRT document; blocks without a valid time range are skipped."""
    segments: list[SubtitleSegment] = []
    normalized = content.replace("\r\n", "\n").replace("\r", "\n").lstrip("\ufeff")
    for block in re.split(r"\n\s*\n", normalized.strip()):
        lines = [line for line in block.split("\n") if line.strip()]
        for i, line in enumerate(lines):
            match = _SRT_RANGE_RE.search(line)
            if match:
                text = " ".join(part.strip() for part in lines[i + 1:]).strip()
                segments.append(SubtitleSegment(
                    start=parse_srt_timestamp(match.group(1)),
                    end=parse_srt_timestamp(match.group(2)),
                    text=text,
                ))
                break
    return segments


# ---------------------------------------------------------------------------
# JSON segment documents
# ---------------------------------------------------------------------------

def parse_json_segments(data: bytes | str) -> list[SubtitleSegment] | None:
    """Parse a JSON array of ``{start, end, text}`` objects.

    Returns ``None`` when ``data`` is not JSON or not an array of valid
    segments.
    """
    try:
        payload = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(payload, list):
        return None
    try:
        return _segments_adapter.validate_python(payload)
    except PydanticValidationError:
        logger.debug("JSON document is not a subtitle segment array", exc_info=True)
        return None


def normalize_segments(raw: list[dict[str, Any]]) -> list[SubtitleSegment]:
    """Coerce collaborator-supplied segments into :class:`SubtitleSegment`.

    Timestamps may be numbers or SRT strings; surrounding whitespace in the
    text is dropped and extra keys are ignored.
    """
    segments: list[SubtitleSegment] = []
    for item in raw:
        segments.append(SubtitleSegment(
            start=parse_srt_timestamp(item["start"]),
            end=parse_srt_timestamp(item["end"]),
            text=str(item.get("text", "")).strip(),
        ))
    return segments


def parse_subtitle_document(data: bytes | str) -> list[SubtitleSegment]:
    """Parse a stored subtitle file, either a JSON array or SRT text."""
    text = data.decode("utf-8-sig") if isinstance(data, bytes) else data
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return parse_srt(text)
    if not isinstance(payload, list):
        raise ValueError("Subtitle JSON document must be an array")
    return normalize_segments(payload)


def segments_to_json(segments: list[SubtitleSegment]) -> list[dict[str, Any]]:
    return [seg.model_dump(mode="json") for seg in segments]

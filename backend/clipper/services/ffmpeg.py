"""FFmpeg / FFprobe helper functions.

Every function in this module is **synchronous** (blocking); the async
:class:`clipper.services.media.MediaTool` runs them in worker threads so they
never stall the event loop.  Failures surface as
``subprocess.CalledProcessError`` (non-zero exit) or ``FileNotFoundError``
(binary missing).
"""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Any

logger = logging.getLogger(__name__)

# Output container -> audio encoder arguments
AUDIO_CODECS: dict[str, list[str]] = {
    "mp3": ["-c:a", "libmp3lame", "-q:a", "2"],
    "wav": ["-c:a", "pcm_s16le"],
    "m4a": ["-c:a", "aac", "-b:a", "128k"],
}


# ---------------------------------------------------------------------------
# ffprobe
# ---------------------------------------------------------------------------

def probe_file(file_path: str) -> dict[str, Any]:
    """Run *ffprobe* on ``file_path`` and return the parsed JSON output.

    The returned dict follows the ffprobe JSON schema and typically contains
    ``"streams"`` and ``"format"`` keys.
    """
    cmd = [
        "ffprobe",
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        file_path,
    ]
    result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    return json.loads(result.stdout)


def get_duration(probe_data: dict[str, Any]) -> float | None:
    """Container duration in seconds, or ``None`` when ffprobe has none."""
    duration = probe_data.get("format", {}).get("duration")
    try:
        return float(duration) if duration is not None else None
    except (TypeError, ValueError):
        return None


def get_resolution(probe_data: dict[str, Any]) -> str:
    """``"<width>x<height>"`` of the first video stream, ``""`` for audio-only."""
    for stream in probe_data.get("streams", []):
        if stream.get("codec_type") == "video":
            width = stream.get("width")
            height = stream.get("height")
            if width and height:
                return f"{width}x{height}"
    return ""


# ---------------------------------------------------------------------------
# Audio extraction
# ---------------------------------------------------------------------------

def extract_audio(input_path: str, output_path: str, fmt: str = "mp3") -> None:
    """Drop the video stream of ``input_path`` and encode its audio as ``fmt``."""
    if fmt not in AUDIO_CODECS:
        raise ValueError(f"Unsupported audio format: {fmt}")
    cmd = [
        "ffmpeg",
        "-y",
        "-i", input_path,
        "-vn",
        *AUDIO_CODECS[fmt],
        output_path,
    ]
    subprocess.run(cmd, capture_output=True, text=True, check=True)


# ---------------------------------------------------------------------------
# Clip cutting
# ---------------------------------------------------------------------------

def build_cut_command(
    input_path: str,
    output_path: str,
    start: float,
    end: float,
    *,
    video_codec: str = "libx264",
    preset: str = "fast",
    crf: int = 22,
    audio_codec: str = "aac",
    audio_bitrate: str = "128k",
) -> list[str]:
    """Build the ffmpeg command that re-encodes ``[start, end)`` of a source.

    Seeking after ``-i`` keeps the cut frame-accurate at the cost of decoding
    from the start of the file.
    """
    return [
        "ffmpeg",
        "-y",
        "-i", input_path,
        "-ss", f"{start:.3f}",
        "-to", f"{end:.3f}",
        "-c:v", video_codec,
        "-preset", preset,
        "-crf", str(crf),
        "-c:a", audio_codec,
        "-b:a", audio_bitrate,
        "-movflags", "+faststart",
        output_path,
    ]


def cut_clip(input_path: str, output_path: str, start: float, end: float, **options: Any) -> None:
    """Render ``[start, end)`` of ``input_path`` to ``output_path``."""
    cmd = build_cut_command(input_path, output_path, start, end, **options)
    logger.debug("Running: %s", " ".join(cmd))
    subprocess.run(cmd, capture_output=True, text=True, check=True)

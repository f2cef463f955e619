"""Media-cutting collaborator.

:class:`MediaTool` wraps the blocking helpers of :mod:`clipper.services.ffmpeg`
in ``asyncio.to_thread`` and turns every failure mode into a
:class:`MediaToolError`: missing source, invalid time range, non-zero exit
and missing output are all checked before a result is returned.
"""

from __future__ import annotations

import asyncio
import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from clipper.core.config import Settings
from clipper.core.exceptions import MediaToolError
from clipper.services import ffmpeg as ffmpeg_service

logger = logging.getLogger(__name__)

# Tolerance for "end beyond source duration": container durations are
# rounded by ffprobe.
_DURATION_SLACK = 0.05


@dataclass(frozen=True)
class CutResult:
    output_location: Path
    file_size_bytes: int
    resolution: str


class MediaTool:
    def __init__(self, **cut_options: Any) -> None:
        self.cut_options = cut_options

    @classmethod
    def from_settings(cls, settings: Settings) -> "MediaTool":
        return cls(
            video_codec=settings.CLIP_VIDEO_CODEC,
            preset=settings.CLIP_PRESET,
            crf=settings.CLIP_CRF,
            audio_codec=settings.CLIP_AUDIO_CODEC,
            audio_bitrate=settings.CLIP_AUDIO_BITRATE,
        )

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except subprocess.CalledProcessError as exc:
            tool = exc.cmd[0] if isinstance(exc.cmd, (list, tuple)) and exc.cmd else "ffmpeg"
            stderr = (exc.stderr or "").strip()
            raise MediaToolError(
                f"{tool} exited with code {exc.returncode}: {stderr[-1000:]}"
            ) from exc
        except FileNotFoundError as exc:
            raise MediaToolError(f"Media tool binary not found: {exc.filename or exc}") from exc
        except json.JSONDecodeError as exc:
            raise MediaToolError(f"Unreadable ffprobe output: {exc}") from exc

    async def probe(self, path: Path) -> dict[str, Any]:
        return await self._run(ffmpeg_service.probe_file, str(path))

    async def cut(self, source: Path, start: float, end: float, output: Path) -> CutResult:
        """Render ``[start, end)`` of ``source`` into ``output``."""
        if not source.is_file():
            raise MediaToolError(f"Source media not found: {source}")
        if start < 0 or start >= end:
            raise MediaToolError(f"Invalid time range: start={start} end={end}")

        duration = ffmpeg_service.get_duration(await self.probe(source))
        if duration is not None and end > duration + _DURATION_SLACK:
            raise MediaToolError(
                f"Invalid time range: end={end} exceeds source duration {duration:.3f}"
            )

        output.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Cutting %s [%.3f, %.3f] -> %s", source, start, end, output)
        await self._run(
            ffmpeg_service.cut_clip, str(source), str(output), start, end, **self.cut_options
        )

        if not output.is_file() or output.stat().st_size == 0:
            raise MediaToolError(f"Media tool produced no output at {output}")

        resolution = ffmpeg_service.get_resolution(await self.probe(output))
        return CutResult(
            output_location=output,
            file_size_bytes=output.stat().st_size,
            resolution=resolution,
        )

    async def extract_audio(self, source: Path, output: Path, fmt: str = "mp3") -> Path:
        """Transcode the audio track of ``source`` into ``output``."""
        if not source.is_file():
            raise MediaToolError(f"Source media not found: {source}")
        if fmt not in ffmpeg_service.AUDIO_CODECS:
            raise MediaToolError(f"Unsupported audio format: {fmt}")

        output.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Extracting %s audio from %s", fmt, source)
        await self._run(ffmpeg_service.extract_audio, str(source), str(output), fmt)

        if not output.is_file() or output.stat().st_size == 0:
            raise MediaToolError(f"Media tool produced no output at {output}")
        return output

"""Transcription collaborators.

Two adapters share the :class:`TranscriptionAdapter` contract:

* :class:`WhisperTranscriber` calls the OpenAI Whisper API and always answers
  with a finished :class:`Transcript`.
* :class:`SubtitleServiceClient` talks to the subtitle-generation HTTP service,
  which may answer immediately or hand back a :class:`JobHandle` that has to be
  polled.

:func:`await_transcript` turns either outcome into a transcript, polling job
handles at a fixed interval up to a bounded number of attempts.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Union

import httpx
from openai import AsyncOpenAI, OpenAIError

from clipper.core.config import Settings
from clipper.core.exceptions import TranscriptionError, TranscriptionTimeoutError
from clipper.schemas.media import SubtitleSegment
from clipper.services.subtitles import normalize_segments

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transcript:
    text: str
    segments: list[SubtitleSegment] = field(default_factory=list)
    subtitle_url: str | None = None

    @classmethod
    def from_segments(
        cls,
        raw_segments: list[dict[str, Any]],
        *,
        text: str | None = None,
        subtitle_url: str | None = None,
    ) -> "Transcript":
        try:
            segments = normalize_segments(raw_segments)
        except (KeyError, TypeError, ValueError) as exc:
            raise TranscriptionError(f"Malformed transcription segments: {exc}") from exc
        if text is None:
            text = " ".join(seg.text for seg in segments)
        return cls(text=text.strip(), segments=segments, subtitle_url=subtitle_url)


@dataclass(frozen=True)
class JobHandle:
    job_id: str


TranscriptionOutcome = Union[Transcript, JobHandle]


class RemoteStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


_SUCCESS_STATUSES = frozenset({"success", "succeeded", "completed", "done"})
_FAILED_STATUSES = frozenset({"failed", "error", "cancelled"})


def classify_status(raw: str | None) -> RemoteStatus:
    """Map a collaborator status string onto running / success / failed.

    Anything unrecognised counts as still running; the poll bound takes care
    of collaborators that never settle.
    """
    value = (raw or "").strip().lower()
    if value in _SUCCESS_STATUSES:
        return RemoteStatus.SUCCESS
    if value in _FAILED_STATUSES:
        return RemoteStatus.FAILED
    return RemoteStatus.RUNNING


@dataclass(frozen=True)
class JobStatusReport:
    status: RemoteStatus
    transcript: Transcript | None = None
    message: str | None = None


class TranscriptionAdapter(ABC):
    """Contract for transcription collaborators."""

    @abstractmethod
    async def transcribe(self, audio_location: str, *, video_id: int | None = None) -> TranscriptionOutcome:
        raise NotImplementedError

    async def fetch_status(self, job_id: str) -> JobStatusReport:
        raise TranscriptionError(f"{type(self).__name__} does not hand out job handles")

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# OpenAI Whisper
# ---------------------------------------------------------------------------

class WhisperTranscriber(TranscriptionAdapter):
    """Whisper API adapter.

    The OpenAI client is created on first use, so a process without
    ``OPENAI_API_KEY`` still starts; only transcription tasks fail.
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        *,
        api_key: str | None = None,
        model: str = "whisper-1",
        language: str = "zh",
    ) -> None:
        self._client = client
        self.api_key = api_key
        self.model = model
        self.language = language

    @classmethod
    def from_settings(cls, settings: Settings) -> "WhisperTranscriber":
        return cls(
            api_key=settings.OPENAI_API_KEY,
            model=settings.WHISPER_MODEL,
            language=settings.TRANSCRIPTION_LANGUAGE,
        )

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise TranscriptionError("OPENAI_API_KEY is not configured")
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def transcribe(self, audio_location: str, *, video_id: int | None = None) -> Transcript:
        """Transcribe a local audio file.

        Parameters
        ----------
        audio_location:
            Path to the audio file on disk.
        video_id:
            Unused; accepted for contract compatibility.

        Returns
        -------
        Transcript
            Full text plus the Whisper segments.
        """
        path = Path(audio_location)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise TranscriptionError(f"Cannot read audio file {audio_location}: {exc}") from exc

        try:
            response = await self._get_client().audio.transcriptions.create(
                model=self.model,
                file=(path.name, data),
                language=self.language,
                response_format="verbose_json",
                timestamp_granularities=["segment"],
            )
        except OpenAIError as exc:
            raise TranscriptionError(f"Whisper API call failed: {exc}") from exc

        payload = response.model_dump() if hasattr(response, "model_dump") else dict(response)
        segments = payload.get("segments")
        if not segments:
            raise TranscriptionError("Transcription result contains no segments")
        return Transcript.from_segments(segments, text=payload.get("text") or None)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


# ---------------------------------------------------------------------------
# Subtitle generation service
# ---------------------------------------------------------------------------

class SubtitleServiceClient(TranscriptionAdapter):
    """Client for the subtitle-generation HTTP service.

    ``POST {base_url}`` submits a job; ``GET {base_url}/{task_id}`` reports
    ``{status, subtitles?, subtitle_url?, message?}``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SubtitleServiceClient":
        return cls(settings.SUBTITLE_API_URL, timeout=settings.SUBTITLE_API_TIMEOUT)

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = await self._client.request(method, url, **kwargs)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            raise TranscriptionError(f"Subtitle service request failed: {exc}") from exc
        except ValueError as exc:
            raise TranscriptionError("Subtitle service returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise TranscriptionError("Subtitle service returned an unexpected payload")
        return data

    @staticmethod
    def build_request(media_location: str, video_id: int | None) -> dict[str, str]:
        """Remote (``https://``) media is passed by URL, anything else as a storage key."""
        payload: dict[str, str] = {"video_id": str(video_id) if video_id is not None else ""}
        if media_location.startswith("https://"):
            payload["media_url"] = media_location
        else:
            payload["media_key"] = media_location.lstrip("/")
        return payload

    def _transcript_from(self, data: dict[str, Any]) -> Transcript | None:
        subtitles = data.get("subtitles")
        subtitle_url = data.get("subtitle_url")
        if subtitles:
            if not isinstance(subtitles, list):
                raise TranscriptionError("Subtitle service returned malformed subtitles")
            return Transcript.from_segments(subtitles, subtitle_url=subtitle_url)
        if subtitle_url:
            return Transcript(text="", subtitle_url=subtitle_url)
        return None

    async def transcribe(self, audio_location: str, *, video_id: int | None = None) -> TranscriptionOutcome:
        data = await self._request("POST", self.base_url, json=self.build_request(audio_location, video_id))
        if data.get("task_id"):
            logger.info("Subtitle job %s submitted for video %s", data["task_id"], video_id)
            return JobHandle(str(data["task_id"]))
        transcript = self._transcript_from(data)
        if transcript is None:
            raise TranscriptionError("Subtitle service returned neither task_id nor subtitles")
        return transcript

    async def fetch_status(self, job_id: str) -> JobStatusReport:
        data = await self._request("GET", f"{self.base_url}/{job_id}")
        status = classify_status(data.get("status"))
        if status is RemoteStatus.SUCCESS:
            transcript = self._transcript_from(data)
            if transcript is None:
                raise TranscriptionError(f"Subtitle job {job_id} finished without subtitles")
            return JobStatusReport(status, transcript=transcript)
        if status is RemoteStatus.FAILED:
            return JobStatusReport(status, message=data.get("message"))
        return JobStatusReport(status)

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

async def await_transcript(
    adapter: TranscriptionAdapter,
    outcome: TranscriptionOutcome,
    *,
    interval: float = 2.0,
    max_attempts: int = 30,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Transcript:
    """Resolve ``outcome`` into a transcript.

    A job handle is polled ``max_attempts`` times, ``interval`` seconds apart;
    a job still running after that is a :class:`TranscriptionTimeoutError`.
    """
    if isinstance(outcome, Transcript):
        return outcome

    for attempt in range(1, max_attempts + 1):
        report = await adapter.fetch_status(outcome.job_id)
        if report.status is RemoteStatus.SUCCESS and report.transcript is not None:
            return report.transcript
        if report.status is RemoteStatus.FAILED:
            raise TranscriptionError(
                f"Subtitle generation failed: {report.message or 'unknown error'}"
            )
        logger.debug("Job %s still running (poll %d/%d)", outcome.job_id, attempt, max_attempts)
        await sleep(interval)

    raise TranscriptionTimeoutError(
        f"Job {outcome.job_id} did not finish after {max_attempts} polls "
        f"({max_attempts * interval:.0f}s)"
    )

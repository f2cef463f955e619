"""LLM-backed highlight extraction.

The extractor sends a timestamped transcript to a chat model and asks for a
JSON array of ``{start, end, text, reason}`` objects.  Models like to wrap the
array in prose or code fences, so :func:`parse_highlights` only looks at the
text between the first ``[`` and the last ``]``.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod

from anthropic import AnthropicError, AsyncAnthropic
from openai import AsyncOpenAI, OpenAIError
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from clipper.core.config import Settings
from clipper.core.exceptions import HighlightParseError, HighlightServiceError
from clipper.schemas.media import Highlight, SubtitleSegment

logger = logging.getLogger(__name__)

_highlights_adapter = TypeAdapter(list[Highlight])

SYSTEM_PROMPT = """\
You are a professional video content analyst. From the timestamped subtitle \
text below, extract the most valuable and engaging segments.
Each segment must last between {min_duration} and {max_duration} seconds. \
Judge value by information density, originality of the point made, or \
emotional resonance.
Answer with a JSON array only, one object per segment, using the language of \
the subtitles for "text" and "reason":
[
  {{
    "start": <number, seconds>,
    "end": <number, seconds>,
    "text": "<segment text>",
    "reason": "<why this segment is valuable>"
  }}
]"""


def build_transcript_text(segments: list[SubtitleSegment]) -> str:
    """One ``[start-end] text`` line per segment."""
    return "\n".join(f"[{seg.start:g}-{seg.end:g}] {seg.text}" for seg in segments)


def parse_highlights(raw: str) -> list[Highlight]:
    """Extract and validate the highlight array embedded in an LLM reply.

    Raises
    ------
    HighlightParseError
        No ``[...]`` span in the reply, the span is not JSON, or any element
        is not a valid highlight.
    """
    start = raw.find("[")
    end = raw.rfind("]")
    if start == -1 or end <= start:
        raise HighlightParseError("No JSON array found in model response")

    try:
        payload = json.loads(raw[start:end + 1])
    except json.JSONDecodeError as exc:
        raise HighlightParseError(f"Malformed JSON array in model response: {exc}") from exc

    try:
        return _highlights_adapter.validate_python(payload)
    except PydanticValidationError as exc:
        raise HighlightParseError(
            f"Model response contains invalid highlights: {exc.error_count()} error(s)"
        ) from exc


class HighlightExtractor(ABC):
    """Base class; subclasses implement :meth:`complete`."""

    @abstractmethod
    async def complete(self, system_prompt: str, user_message: str) -> str:
        raise NotImplementedError

    async def extract(
        self,
        segments: list[SubtitleSegment],
        min_duration: float = 15.0,
        max_duration: float = 30.0,
    ) -> list[Highlight]:
        system_prompt = SYSTEM_PROMPT.format(min_duration=min_duration, max_duration=max_duration)
        reply = await self.complete(system_prompt, build_transcript_text(segments))
        highlights = parse_highlights(reply)
        logger.info("Model proposed %d highlight(s) from %d segment(s)", len(highlights), len(segments))
        return highlights

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions (OpenAI, DeepSeek)
# ---------------------------------------------------------------------------

class OpenAIHighlightExtractor(HighlightExtractor):
    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str = "deepseek-chat",
        temperature: float = 0.5,
    ) -> None:
        self._client = client
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.temperature = temperature

    def _get_client(self) -> AsyncOpenAI:
        """Return a lazily-initialised OpenAI-compatible client."""
        if self._client is None:
            if not self.api_key:
                raise HighlightServiceError("No API key configured for the highlight model")
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    async def complete(self, system_prompt: str, user_message: str) -> str:
        try:
            response = await self._get_client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                temperature=self.temperature,
            )
        except OpenAIError as exc:
            raise HighlightServiceError(f"Chat completion request failed: {exc}") from exc
        if not response.choices:
            raise HighlightServiceError("Chat completion returned no choices")
        return (response.choices[0].message.content or "").strip()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


# ---------------------------------------------------------------------------
# Anthropic Claude
# ---------------------------------------------------------------------------

class ClaudeHighlightExtractor(HighlightExtractor):
    def __init__(
        self,
        client: AsyncAnthropic | None = None,
        *,
        api_key: str | None = None,
        model: str,
        max_tokens: int = 4096,
    ) -> None:
        self._client = client
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens

    def _get_client(self) -> AsyncAnthropic:
        """Return a lazily-initialised Anthropic client."""
        if self._client is None:
            if not self.api_key:
                raise HighlightServiceError("ANTHROPIC_API_KEY is not configured")
            self._client = AsyncAnthropic(api_key=self.api_key)
        return self._client

    async def complete(self, system_prompt: str, user_message: str) -> str:
        try:
            response = await self._get_client().messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_message}],
            )
        except AnthropicError as exc:
            raise HighlightServiceError(f"Claude request failed: {exc}") from exc
        texts = [block.text for block in response.content if getattr(block, "type", None) == "text"]
        if not texts:
            raise HighlightServiceError("Claude returned no text content")
        return "".join(texts).strip()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


def build_highlight_extractor(settings: Settings) -> HighlightExtractor:
    if settings.HIGHLIGHT_PROVIDER == "claude":
        return ClaudeHighlightExtractor(
            api_key=settings.ANTHROPIC_API_KEY,
            model=settings.CLAUDE_MODEL,
        )
    return OpenAIHighlightExtractor(
        api_key=settings.highlight_api_key,
        base_url=settings.LLM_BASE_URL,
        model=settings.LLM_MODEL,
    )

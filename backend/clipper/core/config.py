from __future__ import annotations

from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # --- Database -----------------------------------------------------------
    DATABASE_URL: Optional[str] = None
    DATABASE_ECHO: bool = False

    # --- Redis (Celery broker + job status pub/sub) -------------------------
    REDIS_URL: str = "redis://localhost:6379/0"
    PUBLISH_JOB_STATUS: bool = True

    # --- Storage ------------------------------------------------------------
    STORAGE_BACKEND: Literal["local", "minio"] = "local"
    MEDIA_ROOT: str = "public"
    AUDIO_OUTPUT_DIR: str = "processed/audio"
    SUBTITLE_OUTPUT_DIR: str = "processed/subtitles"
    CLIP_OUTPUT_DIR: str = "clips"
    TEMP_DIR: Optional[str] = None

    MINIO_ENDPOINT: Optional[str] = None
    MINIO_ACCESS_KEY: Optional[str] = None
    MINIO_SECRET_KEY: Optional[str] = None
    MINIO_USE_SSL: bool = False
    MINIO_BUCKET_MEDIA: str = "media"

    # --- Audio extraction ---------------------------------------------------
    # None copies the source media as-is; "mp3" / "wav" / "m4a" transcode.
    AUDIO_EXTRACT_FORMAT: Optional[str] = None

    # --- Transcription ------------------------------------------------------
    OPENAI_API_KEY: Optional[str] = None
    WHISPER_MODEL: str = "whisper-1"
    TRANSCRIPTION_LANGUAGE: str = "zh"

    SUBTITLE_API_URL: str = "http://localhost:8000/api/subtitle"
    SUBTITLE_API_TIMEOUT: float = 30.0
    SUBTITLE_POLL_INTERVAL: float = 2.0
    SUBTITLE_POLL_MAX_ATTEMPTS: int = 30

    # --- Highlight extraction (LLM) -----------------------------------------
    HIGHLIGHT_PROVIDER: Literal["openai", "claude"] = "openai"
    LLM_API_KEY: Optional[str] = None
    LLM_BASE_URL: Optional[str] = "https://api.deepseek.com/v1"
    LLM_MODEL: str = "deepseek-chat"
    ANTHROPIC_API_KEY: Optional[str] = None
    CLAUDE_MODEL: str = "claude-sonnet-4-5-20250929"
    HIGHLIGHT_MIN_DURATION: float = 15.0
    HIGHLIGHT_MAX_DURATION: float = 30.0

    # --- Clip rendering -----------------------------------------------------
    CLIP_VIDEO_CODEC: str = "libx264"
    CLIP_PRESET: str = "fast"
    CLIP_CRF: int = 22
    CLIP_AUDIO_CODEC: str = "aac"
    CLIP_AUDIO_BITRATE: str = "128k"

    # --- Worker loop --------------------------------------------------------
    BATCH_SIZE: int = 5
    LOOP_INTERVAL: float = 30.0
    BATCH_DELAY: float = 2.0
    ERROR_BACKOFF: float = 10.0
    PROCESSING_LEASE_SECONDS: int = 1800
    LOG_LEVEL: Literal["debug", "info", "warning", "error"] = "info"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def missing_worker_settings(self) -> list[str]:
        """Names of settings the worker daemon cannot start without."""
        missing: list[str] = []
        if not self.DATABASE_URL:
            missing.append("DATABASE_URL")
        if not self.OPENAI_API_KEY:
            missing.append("OPENAI_API_KEY")
        return missing

    @property
    def highlight_api_key(self) -> Optional[str]:
        if self.HIGHLIGHT_PROVIDER == "claude":
            return self.ANTHROPIC_API_KEY
        return self.LLM_API_KEY or self.OPENAI_API_KEY


settings = Settings()

"""Application configuration for the call coaching service."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["http://localhost:3000"])

    database_url: str = Field(default="sqlite+aiosqlite:///./callcoach.db")
    database_ssl_required: bool = Field(default=False)
    auto_create_schema: bool = Field(default=True)
    recover_interrupted_calls: bool = Field(default=True)

    upload_dir: Path = Field(default=Path("uploads"))
    max_upload_bytes: int = Field(default=50 * 1024 * 1024)
    allowed_audio_types: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "audio/mpeg",
        "audio/mp3",
        "audio/wav",
        "audio/x-wav",
        "audio/wave",
        "audio/mp4",
        "audio/x-m4a",
        "audio/webm",
        "audio/ogg",
        "audio/flac",
    ])

    huggingface_token: str = Field(default="")
    huggingface_base_url: str = Field(default="https://api-inference.huggingface.co/models")

    stt_provider: str = Field(default="huggingface")
    stt_model: str = Field(default="openai/whisper-large-v3")
    stt_language: str = Field(default="en")
    whisper_model: str = Field(default="small")
    whisper_device: str = Field(default="cpu")
    whisper_compute_type: str = Field(default="int8")

    sentiment_model: str = Field(default="distilbert-base-uncased-finetuned-sst-2-english")
    toxicity_model: str = Field(default="unitary/toxic-bert")
    sentiment_excerpt_sentences: int = Field(default=3, ge=1)

    classification_timeout_seconds: float = Field(default=10.0, gt=0)
    transcription_timeout_seconds: float = Field(default=30.0, gt=0)
    generation_timeout_seconds: float = Field(default=15.0, gt=0)

    gemini_api_key: str = Field(default="")
    gemini_model: str = Field(default="gemini-2.0-flash")
    gemini_model_fallbacks: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "gemini-2.0-flash-lite",
        "gemini-1.5-flash-latest",
    ])

    @field_validator("cors_allow_origins", "allowed_audio_types", "gemini_model_fallbacks", mode="before")
    @classmethod
    def _split_csv(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()

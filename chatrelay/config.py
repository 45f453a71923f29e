from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.logging import get_logger

logger = get_logger(__name__)


class ChatModelId(str, Enum):
    """Model identifiers a client may select for a chat turn."""

    CHAT = "chat-model"
    REASONING = "chat-model-reasoning"


class Visibility(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the chat pipeline."""

    database_url: str = env_field(
        "postgresql://localhost:5432/chatrelay", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Directory the in-memory store mirrors its state to, if set",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (offline provider, local stream relay).",
    )

    # Model provider (OpenAI-compatible endpoint, xAI by default)
    model_api_key: str | None = env_field(None, "MODEL_API_KEY")
    model_base_url: str = env_field("https://api.x.ai/v1", "MODEL_BASE_URL")
    chat_model_name: str = env_field("grok-4", "CHAT_MODEL_NAME")
    reasoning_model_name: str = env_field("grok-3-mini", "REASONING_MODEL_NAME")
    title_model_name: str = env_field("grok-2-1212", "TITLE_MODEL_NAME")
    artifact_model_name: str = env_field("grok-2-1212", "ARTIFACT_MODEL_NAME")
    model_request_timeout_seconds: float = env_field(60.0, "MODEL_REQUEST_TIMEOUT_SECONDS")
    max_tool_steps: int = env_field(5, "MAX_TOOL_STEPS", ge=1)

    # Tools
    serper_api_key: str | None = env_field(None, "SERPER_API_KEY")
    serper_url: str = env_field("https://google.serper.dev/search", "SERPER_URL")
    weather_api_url: str = env_field(
        "https://api.open-meteo.com/v1/forecast", "WEATHER_API_URL"
    )
    tool_timeout_seconds: float = env_field(15.0, "TOOL_TIMEOUT_SECONDS")

    # Attachments
    attachment_fetch_timeout_seconds: float = env_field(
        20.0, "ATTACHMENT_FETCH_TIMEOUT_SECONDS"
    )
    max_attachment_bytes: int = env_field(20 * 1024 * 1024, "MAX_ATTACHMENT_BYTES")
    pdf_text_limit: int = env_field(12000, "PDF_TEXT_LIMIT", ge=1)

    # Quotas
    daily_request_limit: int = env_field(
        100,
        "DAILY_REQUEST_LIMIT",
        description="Maximum chat requests per user in a rolling 24h window",
    )
    guest_max_messages_per_day: int = env_field(20, "GUEST_MAX_MESSAGES_PER_DAY")
    regular_max_messages_per_day: int = env_field(100, "REGULAR_MAX_MESSAGES_PER_DAY")

    # Streams
    resumable_streams_enabled: bool = env_field(True, "RESUMABLE_STREAMS_ENABLED")
    stream_resume_ttl_seconds: int = env_field(
        300,
        "STREAM_RESUME_TTL_SECONDS",
        description="How long a finished stream stays available for reattachment",
    )
    stream_max_events: int = env_field(10000, "STREAM_MAX_EVENTS")
    shutdown_grace_seconds: float = env_field(30.0, "SHUTDOWN_GRACE_SECONDS")

    # Sessions
    session_ttl_minutes: int = env_field(30 * 24 * 60, "SESSION_TTL_MINUTES")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        # xAI deployments export their key under its own name
        if "model_api_key" not in merged:
            fallback_key = os.environ.get("XAI_API_KEY") or env_file_values.get("XAI_API_KEY")
            if fallback_key:
                logger.debug("model_api_key_from_xai_env")
                merged["model_api_key"] = fallback_key
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "redis_url", "model_api_key", "serper_api_key", "memory_store_path", mode="before"
    )
    @classmethod
    def _blank_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def provider_model_name(self, model_id: str) -> str:
        """Map a public model identifier to the provider's model name."""
        mapping = {
            ChatModelId.CHAT.value: self.chat_model_name,
            ChatModelId.REASONING.value: self.reasoning_model_name,
            "title-model": self.title_model_name,
            "artifact-model": self.artifact_model_name,
        }
        return mapping.get(model_id, self.chat_model_name)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

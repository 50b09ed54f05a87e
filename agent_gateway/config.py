from __future__ import annotations

import os
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from agent_gateway.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Process configuration, loaded once at startup and never mutated."""

    # Upstream agent runtime
    anthropic_api_key: str = env_field(None, "ANTHROPIC_API_KEY", validate_default=True)
    anthropic_base_url: Optional[str] = env_field(None, "ANTHROPIC_BASE_URL")
    custom_model: Optional[str] = env_field(None, "CUSTOM_MODEL")
    system_prompt: Optional[str] = env_field(None, "SYSTEM_PROMPT")
    workspace_path: str = env_field("/app/workspace", "WORKSPACE_PATH")
    agent_runtime_url: Optional[str] = env_field(
        None,
        "AGENT_RUNTIME_URL",
        description="Remote NDJSON runtime; the in-process Claude Agent SDK is used when unset",
    )
    agent_runtime_timeout_seconds: float = env_field(
        300.0,
        "AGENT_RUNTIME_TIMEOUT_SECONDS",
        description="Read timeout for the runtime event stream",
    )

    # Token verification
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)

    # Server
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(3000, "PORT")
    environment: str = env_field("development", "ENVIRONMENT")
    request_timeout_seconds: float = env_field(30.0, "REQUEST_TIMEOUT_SECONDS")
    cors_origins: List[str] = env_field([], "CORS_ORIGINS")

    # Rate limiting
    rate_limit_window_ms: int = env_field(60_000, "RATE_LIMIT_WINDOW_MS")
    rate_limit_max_requests: int = env_field(100, "RATE_LIMIT_MAX_REQUESTS")
    chat_rate_limit_window_ms: int = env_field(60_000, "CHAT_RATE_LIMIT_WINDOW_MS")
    chat_rate_limit_max_requests: int = env_field(20, "CHAT_RATE_LIMIT_MAX_REQUESTS")
    health_rate_limit_window_ms: int = env_field(60_000, "HEALTH_RATE_LIMIT_WINDOW_MS")
    health_rate_limit_max_requests: int = env_field(
        100, "HEALTH_RATE_LIMIT_MAX_REQUESTS"
    )
    rate_limit_allow_list: List[str] = env_field(["127.0.0.1"], "RATE_LIMIT_ALLOW_LIST")
    rate_limit_cache_size: int = env_field(
        10_000,
        "RATE_LIMIT_CACHE_SIZE",
        description="Maximum number of rate-limit keys tracked in memory",
    )
    redis_url: Optional[str] = env_field(
        None,
        "REDIS_URL",
        description="Share rate-limit counters across processes when set",
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        env_file_values = dotenv_values(env_file)
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_file_values.get(env_name) is not None:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("anthropic_api_key", mode="before")
    @classmethod
    def _require_api_key(cls, value: Optional[str]) -> str:
        if not value or not value.strip():
            raise ValueError("ANTHROPIC_API_KEY is required")
        return value.strip()

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _require_jwt_secret(cls, value: Optional[str]) -> str:
        if not value:
            raise ValueError("JWT_SECRET is required")
        return value

    @field_validator("anthropic_base_url", "custom_model", "system_prompt", "redis_url")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("cors_origins", "rate_limit_allow_list", mode="before")
    @classmethod
    def _parse_lists(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator(
        "rate_limit_window_ms",
        "rate_limit_max_requests",
        "chat_rate_limit_window_ms",
        "chat_rate_limit_max_requests",
        "health_rate_limit_window_ms",
        "health_rate_limit_max_requests",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("rate limit values must be positive")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def model(self) -> str:
        return self.custom_model or DEFAULT_MODEL


def load_settings() -> Settings:
    """Read settings from the environment, logging which value was missing."""
    try:
        settings = Settings.from_env()
    except ValueError as exc:
        logger.error("settings_invalid", error=str(exc))
        raise
    logger.info(
        "settings_loaded",
        environment=settings.environment,
        host=settings.host,
        port=settings.port,
        model=settings.model,
        base_url=settings.anthropic_base_url or "https://api.anthropic.com",
        redis_enabled=settings.redis_url is not None,
    )
    return settings

"""Configuration management for the orchestra agent."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import PermissionMode

DEFAULT_ENCRYPTION_KEY = "default-encryption-key-change-me"


class AgentSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    agent_name: str = Field(default="orchestra-agent", validation_alias="AGENT_NAME")
    base_dir: Path = Field(default=Path("~/.ai-orchestra"), validation_alias="ORCHESTRA_BASE_DIR")
    encryption_key: str = Field(default=DEFAULT_ENCRYPTION_KEY, validation_alias="ENCRYPTION_KEY")
    claude_path: str | None = Field(default=None, validation_alias="CLAUDE_PATH")
    claude_default_model: str | None = Field(default=None, validation_alias="CLAUDE_MODEL")
    anthropic_api_key: str | None = Field(default=None, validation_alias="ANTHROPIC_API_KEY")
    anthropic_base_url: str | None = Field(default=None, validation_alias="ANTHROPIC_BASE_URL")
    permission_mode: PermissionMode = Field(
        default=PermissionMode.AUTO, validation_alias="ORCHESTRA_PERMISSION_MODE"
    )
    workspace_max_age_hours: float = Field(
        default=24.0, validation_alias="ORCHESTRA_WORKSPACE_MAX_AGE_HOURS"
    )
    terminate_grace_seconds: float = Field(
        default=5.0, validation_alias="ORCHESTRA_TERMINATE_GRACE_SECONDS"
    )
    worker_count: int = Field(default=1, ge=1, validation_alias="ORCHESTRA_WORKER_COUNT")
    claude_home: Path = Field(default=Path("~/.claude"), validation_alias="CLAUDE_HOME")
    log_level: str = Field(default="INFO", validation_alias="ORCHESTRA_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "ORCHESTRA_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("permission_mode", mode="before")
    @classmethod
    def _normalize_permission_mode(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("workspace_max_age_hours", "terminate_grace_seconds")
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("durations must be > 0")
        return value

    @property
    def cache_dir(self) -> Path:
        return self.base_dir / "cache"

    @property
    def workspace_dir(self) -> Path:
        return self.base_dir / "workspaces"


@lru_cache(maxsize=1)
def get_settings() -> AgentSettings:
    """Return cached settings instance."""

    settings = AgentSettings()
    settings.base_dir = settings.base_dir.expanduser().resolve()
    settings.claude_home = settings.claude_home.expanduser()
    return settings


__all__ = ["AgentSettings", "DEFAULT_ENCRYPTION_KEY", "get_settings"]

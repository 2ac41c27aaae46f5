"""Inbound payload models delivered to the agent by the orchestration server."""

from __future__ import annotations

from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _path_component(value: str, label: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{label} must not be empty")
    if "/" in normalized or "\\" in normalized or normalized in {".", ".."}:
        raise ValueError(f"{label} must not contain path separators")
    return normalized


class PermissionMode(str, Enum):
    """Policy governing whether a tool invocation pauses for human approval."""

    ASK = "ask"
    AUTO = "auto"
    YOLO = "yolo"
    PLAN = "plan"


class _WireModel(BaseModel):
    """Accepts the camelCase names used on the wire as well as snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class RepositorySettings(_WireModel):
    auto_update: bool | None = Field(
        default=None,
        description="Refresh the cached clone before each task. Only an explicit false disables it.",
    )
    cache_path: str | None = Field(
        default=None,
        description="Override for the cache directory of this repository.",
    )


class RepositoryConfig(_WireModel):
    """Repository descriptor resolved by the caller; read-only to the agent."""

    id: str = Field(..., description="Stable repository identifier used to key the cache.")
    name: str = Field(..., description="Display name of the repository.")
    url: str = Field(..., description="Clone URL without credentials.")
    branch: str | None = Field(default=None, description="Branch to clone and check out.")
    encrypted_credential: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "encryptedCredential", "encrypted_credential", "credentials"
        ),
        description="Encrypted `ivHex:cipherHex` credential blob.",
    )
    settings: RepositorySettings = Field(default_factory=RepositorySettings)

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        return _path_component(value, "Repository id")

    @field_validator("url")
    @classmethod
    def _require_url(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Repository url must not be empty")
        return normalized

    @field_validator("branch", "encrypted_credential")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @property
    def auto_update(self) -> bool:
        return self.settings.auto_update is not False


class ClaudeConfig(_WireModel):
    """Provider overrides for a single CLI-driven task."""

    auth_token: str | None = None
    base_url: str | None = None
    model: str | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0.0)
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)


class TaskAssignment(_WireModel):
    """A unit of work delivered to a worker over the message channel."""

    task_id: str = Field(..., description="Unique task identifier assigned by the server.")
    repository: RepositoryConfig
    command: str = Field(..., description="Executable to run inside the workspace.")
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    working_directory: str | None = Field(
        default=None,
        description="Directory relative to the workspace root to run in.",
    )
    prompt: str | None = Field(
        default=None,
        description="Instruction for the AI CLI. When set the task is driven through the CLI adapter.",
    )
    claude_config: ClaudeConfig | None = None
    session_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("claudeSessionId", "sessionId", "session_id"),
        description="CLI conversation to resume instead of starting a fresh one.",
    )

    @field_validator("session_id")
    @classmethod
    def _blank_session(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("task_id")
    @classmethod
    def _validate_task_id(cls, value: str) -> str:
        return _path_component(value, "Task id")

    @field_validator("command")
    @classmethod
    def _require_command(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Command must not be empty")
        return normalized

    @field_validator("args", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("args must be a sequence of strings")

    @field_validator("working_directory")
    @classmethod
    def _validate_working_directory(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        candidate = PurePosixPath(value)
        if candidate.is_absolute() or ".." in candidate.parts:
            raise ValueError("working_directory must be relative to the workspace root")
        return str(candidate)


class PermissionResponse(_WireModel):
    request_id: str
    action: Literal["approve", "deny"]
    reason: str | None = None


__all__ = [
    "ClaudeConfig",
    "PermissionMode",
    "PermissionResponse",
    "RepositoryConfig",
    "RepositorySettings",
    "TaskAssignment",
]

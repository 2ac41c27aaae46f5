"""Claude CLI orchestration utilities."""

from .runner import (
    ClaudeNotFoundError,
    ClaudeProcessError,
    ClaudeRunner,
    ClaudeRunnerError,
    PermissionPendingError,
    SessionTerminatedError,
    WorkerBusyError,
)
from .session import ClaudeSession, SessionStatus, TurnResult

__all__ = [
    "ClaudeNotFoundError",
    "ClaudeProcessError",
    "ClaudeRunner",
    "ClaudeRunnerError",
    "ClaudeSession",
    "PermissionPendingError",
    "SessionStatus",
    "SessionTerminatedError",
    "TurnResult",
    "WorkerBusyError",
]

"""Async runner for the Claude CLI."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Mapping, Sequence

from ..models import PermissionMode
from ..process import DEFAULT_TERMINATE_GRACE_SECONDS, CommandResult, ManagedProcess, build_environment

logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "claude"


class ClaudeRunnerError(RuntimeError):
    """Base class for Claude runner errors."""


class ClaudeNotFoundError(ClaudeRunnerError):
    """Raised when the Claude CLI executable cannot be located."""


class ClaudeProcessError(ClaudeRunnerError):
    """Raised when the CLI exits with a non-zero status."""

    def __init__(self, returncode: int, stderr: str = "") -> None:
        message = f"Claude process exited with code {returncode}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class WorkerBusyError(ClaudeRunnerError):
    """Raised when an instruction arrives while another is still in flight."""


class PermissionPendingError(WorkerBusyError):
    """Raised when an instruction arrives while a permission decision is outstanding."""


class SessionTerminatedError(ClaudeRunnerError):
    """Raised from an instruction whose session was terminated mid-flight."""


class ClaudeRunner:
    """Builds CLI invocations and starts Claude processes."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS,
    ) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._grace_seconds = grace_seconds

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise ClaudeNotFoundError(f"Claude executable not found at {candidate}")

        binary = shutil.which(DEFAULT_EXECUTABLE)
        if binary is None:
            raise ClaudeNotFoundError("Claude CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    def build_args(
        self,
        prompt: str,
        *,
        session_id: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        mode: PermissionMode = PermissionMode.AUTO,
        allowed_tools: Sequence[str] = (),
        disallowed_tools: Sequence[str] = (),
    ) -> list[str]:
        """Return the CLI arguments (without the executable) for one instruction."""

        if session_id:
            args = ["-p", "--resume", session_id, prompt]
        else:
            args = ["-p", prompt]
        args.extend(["--output-format", "stream-json", "--verbose"])

        # Model settings are fixed when a conversation starts; resumed sessions reject them.
        overrides = {"--model": model, "--max-tokens": max_tokens, "--temperature": temperature}
        if session_id:
            ignored = sorted(flag for flag, value in overrides.items() if value is not None)
            if ignored:
                logger.info(
                    "Ignoring model overrides on resumed session",
                    extra={"session_id": session_id, "flags": ignored},
                )
        else:
            for flag, value in overrides.items():
                if value is not None:
                    args.extend([flag, str(value)])

        if mode is PermissionMode.PLAN:
            args.extend(["--permission-mode", "plan"])
        elif mode is PermissionMode.YOLO:
            args.append("--dangerously-skip-permissions")
        if mode is not PermissionMode.YOLO:
            for tool in allowed_tools:
                args.extend(["--allowedTools", tool])
            for tool in disallowed_tools:
                args.extend(["--disallowedTools", tool])
        return args

    async def start(
        self,
        args: Sequence[str],
        *,
        cwd: Path | str,
        env: Mapping[str, str],
    ) -> ManagedProcess:
        return await ManagedProcess.spawn(
            [str(self._executable_path), *args],
            cwd=cwd,
            env=env,
            grace_seconds=self._grace_seconds,
        )

    async def version(self) -> CommandResult:
        process = await ManagedProcess.spawn(
            [str(self._executable_path), "--version"],
            env=build_environment(),
            grace_seconds=self._grace_seconds,
        )
        return await process.communicate()


__all__ = [
    "ClaudeNotFoundError",
    "ClaudeProcessError",
    "ClaudeRunner",
    "ClaudeRunnerError",
    "PermissionPendingError",
    "SessionTerminatedError",
    "WorkerBusyError",
]

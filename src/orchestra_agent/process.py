"""Subprocess supervision shared by the generic executor and the CLI adapter."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TERMINATE_GRACE_SECONDS = 5.0
# stream-json lines carry whole assistant messages; the asyncio default of 64 KiB is too small.
STREAM_LINE_LIMIT = 16 * 1024 * 1024

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


class ProcessSpawnError(RuntimeError):
    """Raised when a subprocess cannot be started at all."""


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of a finished subprocess."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def build_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the current environment, sanitized and merged with ``additional``."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


class ManagedProcess:
    """Wraps an asyncio subprocess with idempotent graceful-then-forceful termination."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        args: Sequence[str],
        *,
        grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS,
    ) -> None:
        self._process = process
        self._args = tuple(args)
        self._grace_seconds = grace_seconds
        self._termination: asyncio.Future[None] | None = None

    @classmethod
    async def spawn(
        cls,
        args: Sequence[str],
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS,
    ) -> "ManagedProcess":
        if not args:
            raise ProcessSpawnError("No command given")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
                limit=STREAM_LINE_LIMIT,
            )
        except OSError as exc:
            raise ProcessSpawnError(f"Failed to spawn {args[0]}: {exc}") from exc
        logger.debug("Spawned process", extra={"pid": process.pid, "command": args[0]})
        return cls(process, args, grace_seconds=grace_seconds)

    @property
    def args(self) -> tuple[str, ...]:
        return self._args

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def running(self) -> bool:
        return self._process.returncode is None

    @property
    def terminated(self) -> bool:
        """True once termination was requested for this process."""

        return self._termination is not None

    @property
    def stdout(self) -> asyncio.StreamReader:
        assert self._process.stdout is not None
        return self._process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        assert self._process.stderr is not None
        return self._process.stderr

    async def wait(self) -> int:
        return await self._process.wait()

    async def communicate(self) -> CommandResult:
        stdout_bytes, stderr_bytes = await self._process.communicate()
        return CommandResult(
            args=self._args,
            returncode=self._process.returncode if self._process.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )

    async def terminate(self) -> None:
        """Send SIGTERM, escalating to SIGKILL after the grace period.

        Safe to call repeatedly and after the process has exited: only the first
        call on a live process delivers signals, later calls wait for that one.
        """

        if self._termination is not None:
            await asyncio.shield(self._termination)
            return
        if self._process.returncode is not None:
            return
        self._termination = asyncio.ensure_future(self._terminate())
        await asyncio.shield(self._termination)

    async def _terminate(self) -> None:
        try:
            self._process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self._process.wait(), timeout=self._grace_seconds)
            return
        except asyncio.TimeoutError:
            logger.warning(
                "Process ignored SIGTERM, killing",
                extra={"pid": self._process.pid, "grace_seconds": self._grace_seconds},
            )
        try:
            self._process.kill()
        except ProcessLookupError:
            return
        await self._process.wait()


__all__ = [
    "CommandResult",
    "DEFAULT_TERMINATE_GRACE_SECONDS",
    "ManagedProcess",
    "ProcessSpawnError",
    "build_environment",
]

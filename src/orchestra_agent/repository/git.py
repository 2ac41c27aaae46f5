"""Thin async wrapper over the ``git`` executable."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

from ..process import build_environment

_USERINFO_RE = re.compile(r"(\w[\w+.-]*://)[^/@\s]+@")


class GitError(RuntimeError):
    """Raised when a git command exits with a non-zero status."""


def scrub(text: str) -> str:
    """Mask userinfo in any URL embedded in git output."""

    return _USERINFO_RE.sub(r"\1***@", text)


class GitClient:
    """Runs git commands as subprocesses without ever prompting for input."""

    def __init__(self, executable: str = "git") -> None:
        self._executable = executable

    async def run(self, *args: str, cwd: Path | None = None) -> str:
        """Run a git command and return its stripped stdout."""

        try:
            proc = await asyncio.create_subprocess_exec(
                self._executable,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd is not None else None,
                env=build_environment({"GIT_TERMINAL_PROMPT": "0"}),
            )
        except OSError as exc:
            raise GitError(f"Failed to run {self._executable}: {exc}") from exc
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise GitError(scrub(detail) or f"git {args[0]} failed with code {proc.returncode}")
        return stdout.decode("utf-8", errors="replace").strip()

    async def clone(self, url: str, target: Path, *, branch: str, depth: int = 1) -> None:
        await self.run("clone", "--depth", str(depth), "--branch", branch, url, str(target))

    async def set_remote_url(self, repo: Path, url: str, *, remote: str = "origin") -> None:
        await self.run("remote", "set-url", remote, url, cwd=repo)

    async def fetch(self, repo: Path, *, depth: int = 1, remote: str = "origin") -> None:
        await self.run("fetch", "--depth", str(depth), remote, cwd=repo)

    async def reset_hard(self, repo: Path, ref: str) -> None:
        await self.run("reset", "--hard", ref, cwd=repo)

    async def checkout(self, repo: Path, ref: str) -> None:
        await self.run("checkout", ref, cwd=repo)

    async def current_branch(self, repo: Path) -> str | None:
        branch = await self.run("rev-parse", "--abbrev-ref", "HEAD", cwd=repo)
        if not branch or branch == "HEAD":
            return None
        return branch


__all__ = ["GitClient", "GitError", "scrub"]

"""Repository cache and per-task workspace management."""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

from ..config import DEFAULT_ENCRYPTION_KEY
from ..credentials import build_auth_url, redact_url
from ..models import RepositoryConfig
from .git import GitClient, GitError
from .models import Workspace

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"
FALLBACK_BRANCH = "master"


class RepositoryError(RuntimeError):
    """Raised when a repository cannot be made available in the cache."""


def _check_component(name: str, label: str) -> None:
    if not name or Path(name).name != name or name in {".", ".."}:
        raise RepositoryError(f"{label} '{name}' cannot be used as a directory name")


def _remove_tree(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


class RepositoryManager:
    """Keeps one shallow clone per repository and hands out disposable copies of it.

    Layout under ``base_dir``::

        cache/repo-<repository id>/        persistent shallow clone
        workspaces/<task id>-<millis>/     one per task, deleted after use
    """

    def __init__(
        self,
        base_dir: Path | None = None,
        *,
        encryption_key: str = DEFAULT_ENCRYPTION_KEY,
        git: GitClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        base = Path(base_dir) if base_dir is not None else Path.home() / ".ai-orchestra"
        self._cache_dir = base / "cache"
        self._workspace_dir = base / "workspaces"
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        self._workspace_dir.mkdir(parents=True, exist_ok=True)
        self._encryption_key = encryption_key
        self._git = git or GitClient()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._active: dict[str, Workspace] = {}
        self._issued_ids: set[str] = set()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    @property
    def workspace_dir(self) -> Path:
        return self._workspace_dir

    def cache_path_for(self, config: RepositoryConfig) -> Path:
        if config.settings.cache_path:
            return Path(config.settings.cache_path).expanduser()
        _check_component(config.id, "Repository id")
        return self._cache_dir / f"repo-{config.id}"

    def auth_url(self, config: RepositoryConfig) -> str:
        return build_auth_url(config.url, config.encrypted_credential, self._encryption_key)

    async def ensure_repository(self, config: RepositoryConfig) -> Path:
        """Clone the repository into the cache, or refresh the existing clone.

        Only the first clone can fail the call; refresh failures leave the stale
        cache in place.
        """

        cache_path = self.cache_path_for(config)
        async with self._locks[config.id]:
            if not cache_path.exists():
                await self._clone(config, cache_path)
            elif config.auto_update:
                await self._refresh(config, cache_path)
            else:
                logger.info(
                    "Using cached repository",
                    extra={"repository": config.name, "path": str(cache_path)},
                )
        return cache_path

    async def _clone(self, config: RepositoryConfig, cache_path: Path) -> None:
        url = self.auth_url(config)
        branch = config.branch or DEFAULT_BRANCH
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(
            "Cloning repository into cache",
            extra={"repository": config.name, "url": redact_url(config.url), "branch": branch},
        )
        try:
            await self._git.clone(url, cache_path, branch=branch)
        except GitError as exc:
            if "branch" not in str(exc) or config.branch:
                raise RepositoryError(f"Failed to clone {config.name}: {exc}") from exc
            logger.warning(
                "Default branch missing, retrying with fallback",
                extra={"repository": config.name, "branch": FALLBACK_BRANCH},
            )
            await asyncio.to_thread(_remove_tree, cache_path)
            try:
                await self._git.clone(url, cache_path, branch=FALLBACK_BRANCH)
            except GitError as retry_exc:
                raise RepositoryError(f"Failed to clone {config.name}: {retry_exc}") from retry_exc
        logger.info("Repository cloned", extra={"repository": config.name, "path": str(cache_path)})

    async def _refresh(self, config: RepositoryConfig, cache_path: Path) -> None:
        logger.info("Updating cached repository", extra={"repository": config.name})
        try:
            branch = config.branch or await self._git.current_branch(cache_path) or DEFAULT_BRANCH
            await self._git.set_remote_url(cache_path, self.auth_url(config))
            await self._git.fetch(cache_path, depth=1)
            await self._git.reset_hard(cache_path, f"origin/{branch}")
        except GitError as exc:
            logger.warning(
                "Update failed, using existing cache",
                extra={"repository": config.name, "error": str(exc)},
            )
            return
        logger.info("Cached repository updated", extra={"repository": config.name, "branch": branch})

    def _new_workspace_id(self, task_id: str) -> str:
        stamp = int(self._clock().timestamp() * 1000)
        workspace_id = f"{task_id}-{stamp}"
        while workspace_id in self._issued_ids or (self._workspace_dir / workspace_id).exists():
            stamp += 1
            workspace_id = f"{task_id}-{stamp}"
        self._issued_ids.add(workspace_id)
        return workspace_id

    async def create_workspace(self, config: RepositoryConfig, task_id: str) -> Workspace:
        """Copy the cached clone, including ``.git``, into a fresh task workspace."""

        _check_component(task_id, "Task id")
        cache_path = await self.ensure_repository(config)
        workspace_id = self._new_workspace_id(task_id)
        workspace_path = self._workspace_dir / workspace_id
        logger.info("Creating workspace", extra={"workspace_id": workspace_id, "task_id": task_id})

        async with self._locks[config.id]:
            try:
                await asyncio.to_thread(shutil.copytree, cache_path, workspace_path, symlinks=True)
            except (OSError, shutil.Error) as exc:
                await asyncio.to_thread(shutil.rmtree, workspace_path, ignore_errors=True)
                raise RepositoryError(f"Failed to create workspace {workspace_id}: {exc}") from exc

        if config.branch:
            try:
                await self._git.checkout(workspace_path, config.branch)
            except GitError as exc:
                logger.warning(
                    "Could not check out branch in workspace",
                    extra={"workspace_id": workspace_id, "branch": config.branch, "error": str(exc)},
                )

        workspace = Workspace(
            id=workspace_id,
            path=workspace_path,
            repository_id=config.id,
            created_at=self._clock(),
        )
        self._active[workspace_id] = workspace
        logger.info("Workspace ready", extra={"workspace_id": workspace_id, "path": str(workspace_path)})
        return workspace

    async def cleanup_workspace(self, workspace_id: str) -> bool:
        """Delete a workspace; unknown ids are a logged no-op."""

        workspace = self._active.pop(workspace_id, None)
        if workspace is None:
            logger.warning("Workspace not found", extra={"workspace_id": workspace_id})
            return False
        try:
            await asyncio.to_thread(_remove_tree, workspace.path)
        except OSError as exc:
            logger.error(
                "Workspace cleanup failed",
                extra={"workspace_id": workspace_id, "path": str(workspace.path), "error": str(exc)},
            )
            return False
        logger.info("Workspace cleaned up", extra={"workspace_id": workspace_id})
        return True

    async def cleanup_old_workspaces(
        self, max_age_hours: float = 24, *, keep: Iterable[str] = ()
    ) -> list[str]:
        """Clean every active workspace older than the threshold, except ids in ``keep``."""

        now = self._clock()
        kept = set(keep)
        expired = [
            workspace.id
            for workspace in list(self._active.values())
            if workspace.id not in kept and workspace.age_hours(now) > max_age_hours
        ]
        for workspace_id in expired:
            await self.cleanup_workspace(workspace_id)
        return expired

    async def clean_all(self) -> None:
        """Remove every active workspace and empty the cache directory."""

        logger.info("Cleaning all workspaces and cached repositories")
        for workspace_id in list(self._active):
            await self.cleanup_workspace(workspace_id)
        for child in list(self._cache_dir.iterdir()):
            await asyncio.to_thread(_remove_tree, child)

    def active_workspaces(self) -> list[Workspace]:
        return list(self._active.values())

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        return self._active.get(workspace_id)


__all__ = ["DEFAULT_BRANCH", "FALLBACK_BRANCH", "RepositoryError", "RepositoryManager"]

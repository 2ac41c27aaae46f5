"""FastMCP server bootstrap for the orchestra agent."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .claude import ClaudeNotFoundError, ClaudeRunner
from .config import AgentSettings, get_settings
from .history import ClaudeHistoryReader
from .pool import WorkerPool
from .repository import RepositoryManager
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the agent process."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _build_runner(settings: AgentSettings, metadata: dict) -> ClaudeRunner | None:
    try:
        runner = ClaudeRunner(
            Path(settings.claude_path) if settings.claude_path else None,
            grace_seconds=settings.terminate_grace_seconds,
        )
    except ClaudeNotFoundError as exc:
        metadata["error"] = str(exc)
        return None
    metadata["available"] = True
    metadata["path"] = str(runner.executable)
    version_result = _run_sync(runner.version())
    if version_result.ok:
        metadata["version"] = version_result.stdout.strip()
    else:
        metadata["error"] = version_result.stderr.strip() or "claude --version failed"
    return runner


def create_server(
    settings: Optional[AgentSettings] = None,
    pool: WorkerPool | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server wired to a pool of task executors."""

    settings = settings or get_settings()

    claude_metadata = {
        "available": False,
        "path": settings.claude_path,
        "version": None,
        "error": None,
    }

    if pool is None:
        runner = _build_runner(settings, claude_metadata)
        repositories = RepositoryManager(settings.base_dir, encryption_key=settings.encryption_key)
        pool = WorkerPool.create(repositories, size=settings.worker_count, settings=settings, runner=runner)
    else:
        runner = pool.executors[0].runner
        if runner is not None:
            claude_metadata["available"] = True
            claude_metadata["path"] = str(runner.executable)
    history = ClaudeHistoryReader(settings.claude_home)

    server = FastMCP(
        name="Orchestra Agent",
        version=__version__,
        instructions=(
            "Orchestra Agent runs coding tasks in disposable copies of cached git "
            "repositories, driving the Claude CLI for AI tasks. Assign tasks, answer "
            "permission requests and poll recent events with the provided tools."
        ),
    )

    handles = register_tools(server, pool=pool, settings=settings, history=history)

    @server.resource(
        "resource://orchestra/status",
        name="orchestra_status",
        title="Orchestra Agent Status",
        description="Provides the current runtime status of the agent's workers.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing worker state."""

        repositories = pool.repositories
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "agent_name": settings.agent_name,
            "log_level": settings.log_level,
            "workers": pool.status(),
            "claude": {
                "default_model": settings.claude_default_model,
                **claude_metadata,
            },
            "storage": {
                "cache_dir": str(repositories.cache_dir),
                "workspace_dir": str(repositories.workspace_dir),
                "workspace_max_age_hours": settings.workspace_max_age_hours,
                "claude_projects_dir": str(history.projects_dir),
            },
            "events": {
                "buffered": len(handles.events),
                "latest": handles.events[-1] if handles.events else None,
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "pool", pool)
    setattr(server, "claude_metadata", claude_metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the orchestra agent via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching orchestra agent",
        extra={
            "version": __version__,
            "agent_name": settings.agent_name,
            "log_level": settings.log_level,
            "claude_available": getattr(server, "claude_metadata", {}).get("available"),
            "workers": settings.worker_count,
        },
    )
    server.run()


if __name__ == "__main__":
    main()

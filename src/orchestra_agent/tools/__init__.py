"""Tool registration for the orchestra agent control surface."""

from __future__ import annotations

import itertools
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastmcp import Context, FastMCP

from ..config import AgentSettings
from ..events import AgentEvent, TaskCompleteEvent, TaskErrorEvent, event_payload
from ..history import ClaudeHistoryReader
from ..models import PermissionResponse, TaskAssignment
from ..pool import WorkerPool

logger = logging.getLogger(__name__)

DEFAULT_EVENT_HISTORY = 500


@dataclass(slots=True)
class ToolHandles:
    assign_task: Any
    cancel_task: Any
    respond_permission: Any
    set_mode: Any
    worker_status: Any
    list_workspaces: Any
    cleanup_workspaces: Any
    recent_events: Any
    start_conversation: Any
    send_input: Any
    stop_conversation: Any
    fetch_history: Any
    list_conversations: Any
    events: deque[dict[str, Any]]
    unsubscribe: Any


def register_tools(
    server: FastMCP,
    *,
    pool: WorkerPool,
    settings: AgentSettings,
    history: ClaudeHistoryReader | None = None,
    event_history: int = DEFAULT_EVENT_HISTORY,
) -> ToolHandles:
    """Register the agent's MCP tools on the server."""

    events: deque[dict[str, Any]] = deque(maxlen=event_history)
    sequence = itertools.count(1)

    def _record(event: AgentEvent) -> None:
        events.append(
            {
                "sequence": next(sequence),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **event_payload(event),
            }
        )

    history = history or ClaudeHistoryReader(settings.claude_home)
    unsubscribe = pool.bus.subscribe(_record)

    def _terminal_capture(task_id: str) -> tuple[dict[str, Any], Any]:
        outcome: dict[str, Any] = {}

        def _capture(event: AgentEvent) -> None:
            if isinstance(event, (TaskCompleteEvent, TaskErrorEvent)) and event.task_id == task_id:
                outcome.clear()
                outcome.update(event_payload(event))

        return outcome, pool.bus.subscribe(_capture)

    async def _assign_task(task: dict[str, Any], context: Context | None = None) -> dict[str, Any]:
        """Run a task assignment to completion and return its terminal event."""

        assignment = TaskAssignment.model_validate(task)
        outcome, release = _terminal_capture(assignment.task_id)
        _emit_log(
            context,
            "info",
            "Task assigned",
            extra={"task_id": assignment.task_id, "repository": assignment.repository.name},
        )
        try:
            await pool.assign(assignment)
        finally:
            release()

        _emit_log(
            context,
            "info" if outcome.get("type") == TaskCompleteEvent.tag else "warning",
            "Task finished",
            extra={"task_id": assignment.task_id, "outcome": outcome.get("type")},
        )
        return outcome

    async def _cancel_task(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Cancel the running task if it matches ``task_id``."""

        cancelled = await pool.cancel_task(task_id)
        _emit_log(
            context,
            "warning" if cancelled else "info",
            "Cancel requested",
            extra={"task_id": task_id, "cancelled": cancelled},
        )
        return {"task_id": task_id, "cancelled": cancelled}

    def _respond_permission(
        request_id: str,
        action: str,
        reason: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Approve or deny a pending permission request."""

        response = PermissionResponse(request_id=request_id, action=action, reason=reason)
        resolved = pool.respond_permission(response)
        _emit_log(
            context,
            "info",
            "Permission response received",
            extra={"request_id": request_id, "action": action, "resolved": resolved},
        )
        return {"request_id": request_id, "action": action, "resolved": resolved}

    def _set_mode(mode: str, context: Context | None = None) -> dict[str, Any]:
        """Switch the permission mode of every worker between tasks."""

        current = pool.set_mode(mode.strip().lower())
        _emit_log(context, "info", "Mode switched", extra={"mode": current.value})
        return {"mode": current.value}

    def _worker_status(context: Context | None = None) -> dict[str, Any]:
        """Report pool occupancy and each worker's state, mode and pending requests."""

        status = pool.status()
        status["agent_name"] = settings.agent_name
        _emit_log(context, "debug", "Worker status requested", extra={"busy": status["busy"]})
        return status

    def _list_workspaces(context: Context | None = None) -> list[dict[str, str]]:
        """List workspaces that currently exist on disk for running tasks."""

        workspaces = [workspace.to_dict() for workspace in pool.repositories.active_workspaces()]
        _emit_log(context, "debug", "Listing workspaces", extra={"count": len(workspaces)})
        return workspaces

    async def _cleanup_workspaces(
        max_age_hours: float | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Delete workspaces older than ``max_age_hours``."""

        removed = await pool.sweep(max_age_hours)
        _emit_log(context, "info", "Workspace sweep finished", extra={"removed": len(removed)})
        return {"removed": removed}

    def _recent_events(
        limit: int = 50,
        since: int | None = None,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """Return buffered worker events, oldest first.

        ``since`` is the last sequence number the caller has seen.
        """

        selected = [entry for entry in events if since is None or entry["sequence"] > since]
        if limit > 0:
            selected = selected[-limit:]
        _emit_log(context, "debug", "Events requested", extra={"count": len(selected)})
        return selected

    async def _start_conversation(task: dict[str, Any], context: Context | None = None) -> dict[str, Any]:
        """Open a conversation and run its first prompt, keeping the workspace for follow-ups."""

        assignment = TaskAssignment.model_validate(task)
        outcome, release = _terminal_capture(assignment.task_id)
        try:
            conversation = await pool.start_conversation(assignment)
        finally:
            release()

        _emit_log(
            context,
            "info" if conversation is not None else "warning",
            "Conversation started",
            extra={"task_id": assignment.task_id, "open": conversation is not None},
        )
        if conversation is None:
            return {"task_id": assignment.task_id, "open": False, "outcome": outcome or None}
        return {**conversation.to_dict(), "open": True, "outcome": outcome or None}

    async def _send_input(task_id: str, instruction: str, context: Context | None = None) -> dict[str, Any]:
        """Send a follow-up instruction to an open conversation and return its terminal event."""

        outcome, release = _terminal_capture(task_id)
        try:
            await pool.send_input(task_id, instruction)
        finally:
            release()

        _emit_log(context, "info", "Input delivered", extra={"task_id": task_id, "outcome": outcome.get("type")})
        conversation = pool.get_conversation(task_id)
        return {
            **outcome,
            "session_id": conversation.session.session_id if conversation is not None else None,
        }

    async def _stop_conversation(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Terminate a conversation and delete its workspace."""

        stopped = await pool.stop_conversation(task_id)
        _emit_log(context, "info", "Conversation stop requested", extra={"task_id": task_id, "stopped": stopped})
        return {"task_id": task_id, "stopped": stopped}

    def _fetch_history(
        session_id: str,
        task_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return the recorded messages of a CLI session.

        When ``task_id`` names an open conversation its live session id wins.
        """

        if task_id is not None:
            conversation = pool.get_conversation(task_id)
            if conversation is not None and conversation.session.session_id:
                session_id = conversation.session.session_id
        messages = [message.to_dict() for message in history.fetch_conversation(session_id)]
        _emit_log(context, "debug", "History fetched", extra={"session_id": session_id, "count": len(messages)})
        return {"session_id": session_id, "messages": messages}

    def _list_conversations(context: Context | None = None) -> list[dict[str, Any]]:
        """Summaries of the CLI sessions recorded on this machine, newest first."""

        conversations = [summary.to_dict() for summary in history.list_conversations()]
        _emit_log(context, "debug", "Listing conversations", extra={"count": len(conversations)})
        return conversations

    tool_assign = server.tool(
        name="assign_task",
        description=(
            "Provision a workspace for the given repository and run a task in it. Pass a "
            "TaskAssignment payload (taskId, repository, command, args, prompt, ...). "
            "Returns the terminal task:complete or task:error event."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Runs arbitrary commands inside a disposable repository copy",
            }
        },
    )(_assign_task)

    tool_cancel = server.tool(
        name="cancel_task",
        description="Terminate the running task and remove its workspace.",
    )(_cancel_task)

    tool_respond = server.tool(
        name="respond_permission",
        description="Answer a pending permission request with action 'approve' or 'deny'.",
    )(_respond_permission)

    tool_mode = server.tool(
        name="set_mode",
        description="Switch the permission mode (ask, auto, yolo, plan) on every worker. Refused while a task runs.",
    )(_set_mode)

    tool_status = server.tool(
        name="worker_status",
        description="Report pool occupancy and each worker's state, mode, pending requests and conversations.",
    )(_worker_status)

    tool_workspaces = server.tool(
        name="list_workspaces",
        description="List active task workspaces.",
    )(_list_workspaces)

    tool_cleanup = server.tool(
        name="cleanup_workspaces",
        description="Delete task workspaces older than max_age_hours (defaults to the configured age).",
    )(_cleanup_workspaces)

    tool_events = server.tool(
        name="recent_events",
        description="Return recent worker events; pass since=<sequence> to poll for new ones.",
    )(_recent_events)

    tool_start = server.tool(
        name="start_conversation",
        description=(
            "Open a Claude conversation in a fresh workspace and run its prompt. Accepts the "
            "assign_task payload plus an optional claudeSessionId to resume. The workspace is "
            "kept until stop_conversation."
        ),
    )(_start_conversation)

    tool_input = server.tool(
        name="send_input",
        description="Send a follow-up instruction to an open conversation; the CLI resumes its session.",
    )(_send_input)

    tool_stop = server.tool(
        name="stop_conversation",
        description="Terminate a conversation's CLI process and delete its workspace.",
    )(_stop_conversation)

    tool_history = server.tool(
        name="fetch_history",
        description="Return the recorded user and assistant messages of a Claude session.",
    )(_fetch_history)

    tool_conversations = server.tool(
        name="list_conversations",
        description="List Claude sessions recorded on this machine with summaries, newest first.",
    )(_list_conversations)

    return ToolHandles(
        assign_task=tool_assign,
        cancel_task=tool_cancel,
        respond_permission=tool_respond,
        set_mode=tool_mode,
        worker_status=tool_status,
        list_workspaces=tool_workspaces,
        cleanup_workspaces=tool_cleanup,
        recent_events=tool_events,
        start_conversation=tool_start,
        send_input=tool_input,
        stop_conversation=tool_stop,
        fetch_history=tool_history,
        list_conversations=tool_conversations,
        events=events,
        unsubscribe=unsubscribe,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP context logger when available, else the module logger."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]

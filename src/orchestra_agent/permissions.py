"""Permission gating for tool invocations under the four worker modes.

``ask`` mode relies on keyword heuristics over the natural-language instruction.
That check is best-effort: an instruction can carry dangerous intent without
matching any pattern, so it is a prompt for the operator rather than a
security boundary.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from .events import AgentEvent, ToolUseEvent
from .models import PermissionMode, PermissionResponse

logger = logging.getLogger(__name__)

DANGEROUS_TOOLS = frozenset(
    {"Bash", "Edit", "KillBash", "KillShell", "MultiEdit", "NotebookEdit", "Write"}
)
READ_ONLY_TOOLS = frozenset(
    {
        "BashOutput",
        "ExitPlanMode",
        "Glob",
        "Grep",
        "LS",
        "NotebookRead",
        "Read",
        "Task",
        "TodoRead",
        "TodoWrite",
        "WebFetch",
        "WebSearch",
        "exit_plan_mode",
    }
)
_DANGEROUS_WORDS = frozenset(
    {"bash", "create", "delete", "edit", "exec", "execute", "move", "patch", "remove", "run", "shell", "write"}
)
_READ_ONLY_WORDS = frozenset(
    {"fetch", "find", "get", "glob", "grep", "list", "ls", "read", "search", "view"}
)
_WORD_RE = re.compile(r"[A-Z]?[a-z]+|[A-Z]+(?![a-z])|\d+")


class PermissionDeniedError(RuntimeError):
    """Raised when an instruction is abandoned because a permission was denied."""

    def __init__(self, request_id: str, tool_name: str, reason: str | None = None) -> None:
        message = f"Permission denied for {tool_name}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.request_id = request_id
        self.tool_name = tool_name
        self.reason = reason


class PermissionCancelledError(RuntimeError):
    """Raised into pending waiters when the worker is terminated."""


@dataclass(slots=True)
class PermissionRequest:
    id: str
    tool_name: str
    tool_input: dict[str, Any]
    description: str
    mode: PermissionMode
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True, frozen=True)
class PermissionDecision:
    request_id: str
    approved: bool
    reason: str | None = None


@dataclass(slots=True, frozen=True)
class DetectedOperation:
    kind: str
    tool_name: str
    description: str


_OPERATION_PATTERNS: tuple[tuple[DetectedOperation, re.Pattern[str]], ...] = (
    (
        DetectedOperation("create_file", "Write", "Create new files"),
        re.compile(
            r"\b(create|add|generate|new|write)\b.{0,40}\b(files?|modules?|scripts?|components?|"
            r"director(y|ies)|folders?|classe?s?|tests?)\b|创建|新建",
            re.IGNORECASE,
        ),
    ),
    (
        DetectedOperation("edit_file", "Edit", "Edit or modify existing files"),
        re.compile(
            r"\b(edit|modify|change|update|refactor|fix|rename|replace|delete|remove)\b|修改|编辑|更新|删除",
            re.IGNORECASE,
        ),
    ),
    (
        DetectedOperation("execute", "Bash", "Run or execute commands"),
        re.compile(
            r"\b(run|execute|exec|install|build|deploy|npm|pip|yarn|make)\b|运行|执行|安装",
            re.IGNORECASE,
        ),
    ),
)


def _words(tool_name: str) -> set[str]:
    return {word.lower() for word in _WORD_RE.findall(tool_name)}


def is_dangerous_tool(tool_name: str) -> bool:
    """Return True for tools that write, edit or execute."""

    if tool_name in DANGEROUS_TOOLS:
        return True
    if tool_name in READ_ONLY_TOOLS:
        return False
    return bool(_words(tool_name) & _DANGEROUS_WORDS)


def is_read_only_tool(tool_name: str) -> bool:
    """Return True for tools that only read, search, list or fetch."""

    if tool_name in READ_ONLY_TOOLS:
        return True
    if tool_name in DANGEROUS_TOOLS:
        return False
    words = _words(tool_name)
    return bool(words & _READ_ONLY_WORDS) and not words & _DANGEROUS_WORDS


def detect_operations(instruction: str) -> list[DetectedOperation]:
    """Infer the kinds of operation an instruction asks for."""

    return [operation for operation, pattern in _OPERATION_PATTERNS if pattern.search(instruction)]


class PermissionGate:
    """Arena of pending permission requests for one worker."""

    def __init__(
        self,
        mode: PermissionMode | str = PermissionMode.AUTO,
        *,
        emit: Callable[[AgentEvent], None] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._mode = PermissionMode(mode)
        self._emit = emit
        self._id_factory = id_factory or (lambda: uuid4().hex)
        self._pending: dict[str, tuple[PermissionRequest, asyncio.Future[PermissionDecision]]] = {}

    @property
    def mode(self) -> PermissionMode:
        return self._mode

    @mode.setter
    def mode(self, value: PermissionMode | str) -> None:
        self._mode = PermissionMode(value)

    @property
    def pending(self) -> dict[str, PermissionRequest]:
        return {request_id: entry[0] for request_id, entry in self._pending.items()}

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def needs_approval(self, tool_name: str, *, mode: PermissionMode | None = None) -> bool:
        """Whether a tool-use event must pause under ``mode``.

        ``ask`` mode approves operations before dispatch, so tool-use events seen
        afterwards run without a second prompt.
        """

        mode = mode or self._mode
        if mode is PermissionMode.AUTO:
            return is_dangerous_tool(tool_name)
        if mode is PermissionMode.PLAN:
            return not is_read_only_tool(tool_name)
        return False

    async def request(
        self,
        tool_name: str,
        tool_input: dict[str, Any] | None = None,
        *,
        description: str | None = None,
        mode: PermissionMode | None = None,
        tool_use_id: str | None = None,
    ) -> PermissionDecision:
        """Register a pending request and wait until it is answered."""

        request = PermissionRequest(
            id=self._id_factory(),
            tool_name=tool_name,
            tool_input=dict(tool_input or {}),
            description=description or f"Allow {tool_name}?",
            mode=mode or self._mode,
        )
        future: asyncio.Future[PermissionDecision] = asyncio.get_running_loop().create_future()
        self._pending[request.id] = (request, future)
        logger.info(
            "Permission requested",
            extra={"request_id": request.id, "tool": tool_name, "mode": request.mode.value},
        )
        if self._emit is not None:
            self._emit(
                ToolUseEvent(
                    id=tool_use_id or request.id,
                    name=tool_name,
                    input=request.tool_input,
                    requires_permission=True,
                    permission_request_id=request.id,
                )
            )
        try:
            return await future
        finally:
            self._pending.pop(request.id, None)

    async def authorize(
        self, tool_name: str, tool_input: dict[str, Any], *, tool_use_id: str, mode: PermissionMode
    ) -> PermissionDecision | None:
        """Gate a tool-use event; ``None`` means it needed no approval."""

        if not self.needs_approval(tool_name, mode=mode):
            return None
        return await self.request(
            tool_name,
            tool_input,
            description=f"{tool_name} wants to run",
            mode=mode,
            tool_use_id=tool_use_id,
        )

    async def precheck(
        self, instruction: str, *, mode: PermissionMode
    ) -> tuple[DetectedOperation, PermissionDecision] | None:
        """Approve every operation detected in ``instruction`` under ``ask`` mode.

        Returns the first denied operation with its decision, or ``None`` when the
        instruction may be dispatched.
        """

        if mode is not PermissionMode.ASK:
            return None
        for operation in detect_operations(instruction):
            decision = await self.request(
                operation.tool_name,
                {"operation": operation.kind, "instruction": instruction},
                description=operation.description,
                mode=mode,
            )
            if not decision.approved:
                return operation, decision
        return None

    def handle_permission_response(
        self, request_id: str, action: str, reason: str | None = None
    ) -> bool:
        """Resolve a pending request; returns False for unknown or settled ids."""

        if action not in {"approve", "deny"}:
            raise ValueError(f"Unknown permission action '{action}'")
        entry = self._pending.pop(request_id, None)
        if entry is None:
            logger.warning("Permission response for unknown request", extra={"request_id": request_id})
            return False
        request, future = entry
        if future.done():
            return False
        approved = action == "approve"
        logger.info(
            "Permission resolved",
            extra={"request_id": request_id, "tool": request.tool_name, "approved": approved},
        )
        future.set_result(PermissionDecision(request_id=request_id, approved=approved, reason=reason))
        return True

    def respond(self, response: PermissionResponse) -> bool:
        return self.handle_permission_response(response.request_id, response.action, response.reason)

    def reject_all(self, reason: str = "Worker terminated") -> int:
        """Fail every pending request so no waiter hangs; returns how many were rejected."""

        entries = list(self._pending.values())
        self._pending.clear()
        rejected = 0
        for request, future in entries:
            if future.done():
                continue
            future.set_exception(PermissionCancelledError(f"{reason}: {request.tool_name}"))
            rejected += 1
        if rejected:
            logger.warning("Rejected pending permission requests", extra={"count": rejected})
        return rejected


__all__ = [
    "DANGEROUS_TOOLS",
    "READ_ONLY_TOOLS",
    "DetectedOperation",
    "PermissionCancelledError",
    "PermissionDecision",
    "PermissionDeniedError",
    "PermissionGate",
    "PermissionRequest",
    "detect_operations",
    "is_dangerous_tool",
    "is_read_only_tool",
]

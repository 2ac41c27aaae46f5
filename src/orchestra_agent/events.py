"""Outbound events emitted by a worker toward the transport layer."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, ClassVar, Union

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class WorkerStatusEvent:
    tag: ClassVar[str] = "worker:status"

    status: str
    task_id: str | None = None


@dataclass(slots=True, frozen=True)
class TaskCompleteEvent:
    tag: ClassVar[str] = "task:complete"

    task_id: str
    success: bool
    output: str
    error: str | None = None
    stderr: str = ""


@dataclass(slots=True, frozen=True)
class TaskErrorEvent:
    tag: ClassVar[str] = "task:error"

    task_id: str
    error: str


@dataclass(slots=True, frozen=True)
class SystemInitEvent:
    tag: ClassVar[str] = "system-init"

    session_id: str | None
    model: str | None
    cwd: str | None
    tools: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class OutputEvent:
    tag: ClassVar[str] = "output"

    text: str


@dataclass(slots=True, frozen=True)
class ThinkingEvent:
    tag: ClassVar[str] = "thinking"

    content: str


@dataclass(slots=True, frozen=True)
class ToolUseEvent:
    tag: ClassVar[str] = "tool-use"

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    requires_permission: bool = False
    permission_request_id: str | None = None


@dataclass(slots=True, frozen=True)
class ToolResultEvent:
    tag: ClassVar[str] = "tool-result"

    tool_use_id: str
    content: str
    is_error: bool = False


@dataclass(slots=True, frozen=True)
class TokenUsageEvent:
    tag: ClassVar[str] = "token-usage"

    input_tokens: int
    output_tokens: int
    total_tokens: int
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None


@dataclass(slots=True, frozen=True)
class ResultEvent:
    tag: ClassVar[str] = "result"

    subtype: str


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    tag: ClassVar[str] = "error"

    message: str


@dataclass(slots=True, frozen=True)
class PermissionDeniedEvent:
    tag: ClassVar[str] = "permission-denied"

    request_id: str
    tool_name: str
    reason: str | None = None


AgentEvent = Union[
    WorkerStatusEvent,
    TaskCompleteEvent,
    TaskErrorEvent,
    SystemInitEvent,
    OutputEvent,
    ThinkingEvent,
    ToolUseEvent,
    ToolResultEvent,
    TokenUsageEvent,
    ResultEvent,
    ErrorEvent,
    PermissionDeniedEvent,
]

EventListener = Callable[[AgentEvent], None]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def event_payload(event: AgentEvent) -> dict[str, Any]:
    """Serialize an event into the camelCase payload carried by the transport."""

    body = {_camel(key): value for key, value in asdict(event).items()}
    if isinstance(event, SystemInitEvent):
        body["tools"] = list(event.tools)
    return {"type": event.tag, **body}


class EventBus:
    """Per-worker callback table fanning events out to subscribers."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: AgentEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed", extra={"event": event.tag})


__all__ = [
    "AgentEvent",
    "ErrorEvent",
    "EventBus",
    "EventListener",
    "OutputEvent",
    "PermissionDeniedEvent",
    "ResultEvent",
    "SystemInitEvent",
    "TaskCompleteEvent",
    "TaskErrorEvent",
    "ThinkingEvent",
    "TokenUsageEvent",
    "ToolResultEvent",
    "ToolUseEvent",
    "WorkerStatusEvent",
    "event_payload",
]

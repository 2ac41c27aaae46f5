"""Decoder for the CLI's newline-delimited JSON (stream-json) output.

Every non-empty line decodes to exactly one message. Field aliases used by
different CLI versions (``session_id``/``sessionId``/``id``, string or block
content, top-level or nested usage) are normalized here once so the rest of
the adapter only sees the canonical types below.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(slots=True, frozen=True)
class SystemInit:
    session_id: str | None
    subtype: str | None = None
    model: str | None = None
    cwd: str | None = None
    tools: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class Text:
    text: str


@dataclass(slots=True, frozen=True)
class Thinking:
    content: str


@dataclass(slots=True, frozen=True)
class ToolUse:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ToolResult:
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Union[Text, Thinking, ToolUse, ToolResult]


@dataclass(slots=True, frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True, frozen=True)
class UserMessage:
    blocks: tuple[ContentBlock, ...] = ()


@dataclass(slots=True, frozen=True)
class AssistantMessage:
    blocks: tuple[ContentBlock, ...] = ()
    usage: TokenUsage | None = None


@dataclass(slots=True, frozen=True)
class Result:
    subtype: str
    usage: TokenUsage | None = None
    result: str | None = None
    session_id: str | None = None
    is_error: bool = False


@dataclass(slots=True, frozen=True)
class ErrorMessage:
    message: str


@dataclass(slots=True, frozen=True)
class UnknownMessage:
    type: str | None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class RawOutput:
    text: str


StreamMessage = Union[
    SystemInit,
    UserMessage,
    AssistantMessage,
    Text,
    Thinking,
    ToolUse,
    ToolResult,
    TokenUsage,
    Result,
    ErrorMessage,
    UnknownMessage,
    RawOutput,
]


def _first(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _text_of(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict):
                parts.append(str(_first(item, "text", "content") or ""))
            else:
                parts.append(str(item))
        return "".join(parts)
    if isinstance(content, dict):
        return str(_first(content, "text", "content") or "")
    return str(content)


def decode_usage(payload: Any) -> TokenUsage | None:
    if not isinstance(payload, dict):
        return None
    return TokenUsage(
        input_tokens=_as_int(_first(payload, "input_tokens", "inputTokens")) or 0,
        output_tokens=_as_int(_first(payload, "output_tokens", "outputTokens")) or 0,
        cache_creation_input_tokens=_as_int(
            _first(payload, "cache_creation_input_tokens", "cacheCreationInputTokens")
        ),
        cache_read_input_tokens=_as_int(
            _first(payload, "cache_read_input_tokens", "cacheReadInputTokens")
        ),
    )


def _decode_tool_use(payload: dict[str, Any]) -> ToolUse:
    raw_input = payload.get("input")
    return ToolUse(
        id=str(_first(payload, "id", "tool_use_id", "toolUseId") or ""),
        name=str(payload.get("name") or ""),
        input=raw_input if isinstance(raw_input, dict) else {},
    )


def _decode_tool_result(payload: dict[str, Any]) -> ToolResult:
    return ToolResult(
        tool_use_id=str(_first(payload, "tool_use_id", "toolUseId", "id") or ""),
        content=_text_of(payload.get("content")),
        is_error=bool(_first(payload, "is_error", "isError")),
    )


def _decode_block(block: Any) -> ContentBlock | None:
    if isinstance(block, str):
        return Text(block)
    if not isinstance(block, dict):
        return None
    kind = block.get("type")
    if kind == "text":
        return Text(str(block.get("text") or ""))
    if kind == "thinking":
        return Thinking(str(_first(block, "thinking", "text", "content") or ""))
    if kind == "tool_use":
        return _decode_tool_use(block)
    if kind == "tool_result":
        return _decode_tool_result(block)
    return None


def _decode_blocks(payload: dict[str, Any]) -> tuple[ContentBlock, ...]:
    # Current CLIs nest the API message under "message"; older ones put content at the top.
    message = payload.get("message")
    source = message if isinstance(message, dict) else payload
    content = source.get("content")
    if isinstance(content, str):
        return (Text(content),) if content else ()
    if not isinstance(content, list):
        return ()
    blocks = (_decode_block(item) for item in content)
    return tuple(block for block in blocks if block is not None)


def session_id_of(payload: dict[str, Any]) -> str | None:
    value = _first(payload, "session_id", "sessionId", "id")
    return str(value) if value else None


def decode_message(payload: dict[str, Any]) -> StreamMessage:
    """Normalize one decoded JSON object into a :data:`StreamMessage`."""

    kind = payload.get("type")
    if kind == "system":
        tools = payload.get("tools")
        return SystemInit(
            session_id=session_id_of(payload),
            subtype=payload.get("subtype"),
            model=payload.get("model"),
            cwd=payload.get("cwd"),
            tools=tuple(str(tool) for tool in tools) if isinstance(tools, list) else (),
        )
    if kind == "assistant":
        message = payload.get("message")
        usage = decode_usage(message.get("usage")) if isinstance(message, dict) else None
        return AssistantMessage(blocks=_decode_blocks(payload), usage=usage)
    if kind == "user":
        return UserMessage(blocks=_decode_blocks(payload))
    if kind == "text":
        return Text(_text_of(_first(payload, "content", "text")))
    if kind == "thinking":
        return Thinking(_text_of(_first(payload, "content", "text", "thinking")))
    if kind == "tool_use":
        return _decode_tool_use(payload)
    if kind == "tool_result":
        return _decode_tool_result(payload)
    if kind in {"usage", "token_usage"}:
        return decode_usage(payload) or TokenUsage()
    if kind == "result":
        result_text = payload.get("result")
        return Result(
            subtype=str(payload.get("subtype") or "success"),
            usage=decode_usage(payload.get("usage")),
            result=result_text if isinstance(result_text, str) else None,
            session_id=session_id_of(payload),
            is_error=bool(payload.get("is_error")),
        )
    if kind == "error":
        error = _first(payload, "error", "message")
        if isinstance(error, dict):
            error = error.get("message")
        return ErrorMessage(str(error or "Unknown error"))
    return UnknownMessage(type=kind if isinstance(kind, str) else None, payload=payload)


def decode_line(line: str) -> StreamMessage | None:
    """Decode one line of CLI output; ``None`` for blank lines.

    Lines that are not a JSON object come back as :class:`RawOutput`.
    """

    stripped = line.strip()
    if not stripped:
        return None
    try:
        payload = json.loads(stripped)
    except ValueError:
        return RawOutput(stripped)
    if not isinstance(payload, dict):
        return RawOutput(stripped)
    return decode_message(payload)


__all__ = [
    "AssistantMessage",
    "ContentBlock",
    "ErrorMessage",
    "RawOutput",
    "Result",
    "StreamMessage",
    "SystemInit",
    "Text",
    "Thinking",
    "TokenUsage",
    "ToolResult",
    "ToolUse",
    "UnknownMessage",
    "UserMessage",
    "decode_line",
    "decode_message",
    "decode_usage",
    "session_id_of",
]

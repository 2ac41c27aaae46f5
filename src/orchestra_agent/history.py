"""Read the Claude CLI's local conversation transcripts."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterator

logger = logging.getLogger(__name__)

SUMMARY_LENGTH = 100
_CONVERSATION_TYPES = {"user", "assistant"}


@dataclass(slots=True, frozen=True)
class HistoryMessage:
    uuid: str
    session_id: str
    type: str
    timestamp: str
    message: Any
    cwd: str | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class ConversationSummary:
    session_id: str
    project_path: str
    summary: str
    created_at: str
    updated_at: str
    message_count: int
    total_duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _truncate(text: str) -> str:
    if len(text) > SUMMARY_LENGTH:
        return text[:SUMMARY_LENGTH] + "..."
    return text


def _summarize(entries: list[dict[str, Any]]) -> str:
    first_user = next((entry for entry in entries if entry.get("type") == "user"), None)
    if first_user is None:
        return "Empty conversation"
    message = first_user.get("message")
    if isinstance(message, str):
        return _truncate(message)
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, list) and content and isinstance(content[0], dict):
            return _truncate(str(content[0].get("text") or ""))
        if isinstance(content, str):
            return _truncate(content)
    return "Conversation"


class ClaudeHistoryReader:
    """Parses ``<claude home>/projects/*/*.jsonl`` transcripts written by the CLI.

    Transcripts are read on every call; the CLI owns these files and may append
    to them at any time.
    """

    def __init__(self, claude_home: Path | None = None) -> None:
        home = Path(claude_home).expanduser() if claude_home is not None else Path.home() / ".claude"
        self._projects_dir = home / "projects"

    @property
    def projects_dir(self) -> Path:
        return self._projects_dir

    def _transcripts(self) -> Iterator[Path]:
        if not self._projects_dir.is_dir():
            return
        for project in sorted(self._projects_dir.iterdir()):
            if project.is_dir():
                yield from sorted(project.glob("*.jsonl"))

    @staticmethod
    def _read(path: Path) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        with path.open(encoding="utf-8") as handle:
            for number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(
                        "Skipping malformed transcript line",
                        extra={"path": str(path), "line_number": number},
                    )
                    continue
                if isinstance(payload, dict):
                    entries.append(payload)
        return entries

    def _entries(self) -> Iterator[dict[str, Any]]:
        for path in self._transcripts():
            yield from self._read(path)

    def fetch_conversation(self, session_id: str) -> list[HistoryMessage]:
        """Return the user and assistant messages of one session, oldest first."""

        messages = [
            HistoryMessage(
                uuid=entry.get("uuid") or "",
                session_id=session_id,
                type=entry["type"],
                timestamp=entry.get("timestamp") or "",
                message=entry.get("message"),
                cwd=entry.get("cwd"),
                duration_ms=entry.get("durationMs"),
            )
            for entry in self._entries()
            if entry.get("sessionId") == session_id and entry.get("type") in _CONVERSATION_TYPES
        ]
        messages.sort(key=lambda message: message.timestamp)
        return messages

    def list_conversations(self) -> list[ConversationSummary]:
        """Summaries of every recorded session, most recently updated first."""

        sessions: dict[str, list[dict[str, Any]]] = {}
        summaries: dict[str, str] = {}
        for entry in self._entries():
            kind = entry.get("type")
            if kind == "summary" and entry.get("leafUuid") and entry.get("summary"):
                summaries[entry["leafUuid"]] = entry["summary"]
            elif kind in _CONVERSATION_TYPES and entry.get("sessionId"):
                sessions.setdefault(entry["sessionId"], []).append(entry)

        conversations = []
        for session_id, entries in sessions.items():
            entries.sort(key=lambda entry: entry.get("timestamp") or "")
            first, last = entries[0], entries[-1]
            summary = summaries.get(last.get("uuid") or "") or _summarize(entries)
            conversations.append(
                ConversationSummary(
                    session_id=session_id,
                    project_path=first.get("cwd") or "",
                    summary=summary,
                    created_at=first.get("timestamp") or "",
                    updated_at=last.get("timestamp") or "",
                    message_count=len(entries),
                    total_duration_ms=sum(int(entry.get("durationMs") or 0) for entry in entries),
                )
            )
        conversations.sort(key=lambda conversation: conversation.updated_at, reverse=True)
        return conversations


__all__ = ["ClaudeHistoryReader", "ConversationSummary", "HistoryMessage"]

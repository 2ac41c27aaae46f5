"""Conversation sessions driving the Claude CLI one instruction at a time."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping

from ..events import (
    ErrorEvent,
    EventBus,
    OutputEvent,
    PermissionDeniedEvent,
    ResultEvent,
    SystemInitEvent,
    ThinkingEvent,
    TokenUsageEvent,
    ToolResultEvent,
    ToolUseEvent,
    WorkerStatusEvent,
)
from ..models import ClaudeConfig, PermissionMode
from ..permissions import (
    PermissionCancelledError,
    PermissionDeniedError,
    PermissionGate,
    detect_operations,
)
from ..process import ManagedProcess
from .runner import (
    ClaudeProcessError,
    ClaudeRunner,
    PermissionPendingError,
    SessionTerminatedError,
    WorkerBusyError,
)
from .stream import (
    AssistantMessage,
    ErrorMessage,
    RawOutput,
    Result,
    StreamMessage,
    SystemInit,
    Text,
    Thinking,
    TokenUsage,
    ToolResult,
    ToolUse,
    UnknownMessage,
    UserMessage,
    decode_line,
)
from .utils import provider_environment, redact_args

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    WAITING = "waiting"
    ERROR = "error"


@dataclass(slots=True)
class TurnResult:
    """Aggregated outcome of one instruction."""

    session_id: str | None
    returncode: int
    subtype: str | None = None
    result: str | None = None
    usage: TokenUsage | None = None
    texts: list[str] = field(default_factory=list)
    stderr: str = ""

    @property
    def output(self) -> str:
        if self.result:
            return self.result
        return "\n".join(self.texts)


class ClaudeSession:
    """Adapter between one CLI conversation and the worker's event bus.

    The first instruction starts a fresh conversation; the session id announced
    by the CLI is latched and every later instruction resumes it.
    """

    def __init__(
        self,
        runner: ClaudeRunner,
        *,
        working_directory: Path | str,
        bus: EventBus | None = None,
        gate: PermissionGate | None = None,
        config: ClaudeConfig | None = None,
        session_id: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        env: Mapping[str, str] | None = None,
        task_id: str | None = None,
        report_status: bool = True,
    ) -> None:
        self._runner = runner
        self._working_directory = Path(working_directory)
        self._bus = bus or EventBus()
        self._gate = gate or PermissionGate(emit=self._bus.emit)
        self._config = config or ClaudeConfig()
        self._session_id = session_id
        self._session_id_extracted = session_id is not None
        self._api_key = self._config.auth_token or api_key
        self._base_url = self._config.base_url or base_url
        self._model = self._config.model or model
        self._env = dict(env or {})
        self._task_id = task_id
        self._status = SessionStatus.IDLE
        self._report_status = report_status
        self._reported = SessionStatus.IDLE
        self._inflight = False
        self._process: ManagedProcess | None = None
        self._abort: Exception | None = None

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def working_directory(self) -> Path:
        return self._working_directory

    @property
    def model(self) -> str | None:
        return self._model

    @property
    def mode(self) -> PermissionMode:
        return self._gate.mode

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def gate(self) -> PermissionGate:
        return self._gate

    @property
    def bus(self) -> EventBus:
        return self._bus

    def set_model(self, model: str | None) -> bool:
        """Change the model for a fresh conversation; a logged no-op once resumed."""

        if self._session_id:
            logger.info(
                "Model override ignored for resumed session",
                extra={"session_id": self._session_id, "model": model},
            )
            return False
        self._model = model
        return True

    def set_mode(self, mode: PermissionMode | str) -> None:
        if self._inflight:
            raise WorkerBusyError("Cannot change mode while an instruction is running")
        self._gate.mode = mode

    def _set_status(self, status: SessionStatus) -> None:
        self._status = status
        # waiting and error stay internal; the transport only sees busy and idle
        if status in (SessionStatus.BUSY, SessionStatus.IDLE):
            self._report(status)

    def _report(self, status: SessionStatus) -> None:
        if not self._report_status or status is self._reported:
            return
        self._reported = status
        self._bus.emit(WorkerStatusEvent(status=status.value, task_id=self._task_id))

    async def send_command(self, instruction: str) -> TurnResult:
        """Run one instruction to completion and return the aggregated turn."""

        if self._status is SessionStatus.WAITING or self._gate.has_pending:
            raise PermissionPendingError("Worker is waiting for permission")
        if self._inflight:
            raise WorkerBusyError("Worker is busy")

        self._inflight = True
        self._abort = None
        mode = self._gate.mode
        self._set_status(SessionStatus.BUSY)
        try:
            await self._precheck(instruction, mode)
            return await self._execute(instruction, mode)
        except (PermissionDeniedError, PermissionCancelledError, SessionTerminatedError):
            raise
        except Exception:
            self._set_status(SessionStatus.ERROR)
            raise
        finally:
            self._process = None
            self._inflight = False
            if self._status is not SessionStatus.ERROR:
                self._status = SessionStatus.IDLE
            self._report(SessionStatus.IDLE)

    async def _precheck(self, instruction: str, mode: PermissionMode) -> None:
        if mode is not PermissionMode.ASK or not detect_operations(instruction):
            return
        self._set_status(SessionStatus.WAITING)
        try:
            denial = await self._gate.precheck(instruction, mode=mode)
        finally:
            self._set_status(SessionStatus.BUSY)
        if denial is None:
            return
        operation, decision = denial
        self._bus.emit(
            PermissionDeniedEvent(
                request_id=decision.request_id, tool_name=operation.tool_name, reason=decision.reason
            )
        )
        logger.info(
            "Instruction abandoned before dispatch",
            extra={"operation": operation.kind, "request_id": decision.request_id},
        )
        raise PermissionDeniedError(decision.request_id, operation.tool_name, decision.reason)

    async def _execute(self, instruction: str, mode: PermissionMode) -> TurnResult:
        args = self._runner.build_args(
            instruction,
            session_id=self._session_id,
            model=self._model,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            mode=mode,
            allowed_tools=self._config.allowed_tools,
            disallowed_tools=self._config.disallowed_tools,
        )
        env = provider_environment(self._api_key, self._base_url, self._env)
        logger.info(
            "Executing Claude",
            extra={
                "argv": redact_args(args, instruction),
                "cwd": str(self._working_directory),
                "resume": self._session_id is not None,
            },
        )

        try:
            process = await self._runner.start(args, cwd=self._working_directory, env=env)
        except Exception as exc:
            self._bus.emit(ErrorEvent(message=str(exc)))
            raise
        self._process = process
        if self._abort is not None:
            await process.terminate()
        stderr_task = asyncio.create_task(self._drain_stderr(process))
        turn = TurnResult(session_id=self._session_id, returncode=-1)
        try:
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace")
                message = decode_line(line)
                if message is None:
                    continue
                await self._dispatch(message, mode, turn, line.strip())
                if self._abort is not None:
                    break
            if self._abort is not None:
                await process.terminate()
            turn.returncode = await process.wait()
        finally:
            if process.running:
                await process.terminate()
            turn.stderr = await stderr_task

        turn.session_id = self._session_id
        if self._abort is not None:
            raise self._abort
        if turn.returncode != 0:
            error = ClaudeProcessError(turn.returncode, turn.stderr)
            self._bus.emit(ErrorEvent(message=str(error)))
            raise error
        return turn

    async def _drain_stderr(self, process: ManagedProcess) -> str:
        chunks: list[str] = []
        async for raw in process.stderr:
            text = raw.decode("utf-8", errors="replace")
            chunks.append(text)
            logger.debug("Claude stderr", extra={"line": text.rstrip()})
        return "".join(chunks)

    async def _dispatch(
        self, message: StreamMessage, mode: PermissionMode, turn: TurnResult, line: str
    ) -> None:
        emit = self._bus.emit
        if isinstance(message, SystemInit):
            self._capture_session_id(message.session_id)
            if message.subtype in (None, "init"):
                emit(
                    SystemInitEvent(
                        session_id=self._session_id,
                        model=message.model or self._model,
                        cwd=message.cwd or str(self._working_directory),
                        tools=message.tools,
                    )
                )
            else:
                emit(OutputEvent(text=line))
        elif isinstance(message, AssistantMessage):
            for block in message.blocks:
                if isinstance(block, Text):
                    self._emit_text(block.text, turn)
                elif isinstance(block, Thinking):
                    emit(ThinkingEvent(content=block.content))
                elif isinstance(block, ToolUse):
                    await self._handle_tool_use(block, mode)
                    if self._abort is not None:
                        return
        elif isinstance(message, UserMessage):
            for block in message.blocks:
                if isinstance(block, ToolResult):
                    self._emit_tool_result(block)
        elif isinstance(message, Text):
            self._emit_text(message.text, turn)
        elif isinstance(message, Thinking):
            emit(ThinkingEvent(content=message.content))
        elif isinstance(message, ToolUse):
            await self._handle_tool_use(message, mode)
        elif isinstance(message, ToolResult):
            self._emit_tool_result(message)
        elif isinstance(message, TokenUsage):
            self._emit_usage(message)
        elif isinstance(message, Result):
            turn.subtype = message.subtype
            turn.result = message.result
            turn.usage = message.usage
            if message.usage is not None:
                self._emit_usage(message.usage)
            self._set_status(SessionStatus.IDLE)
            emit(ResultEvent(subtype=message.subtype))
        elif isinstance(message, ErrorMessage):
            emit(ErrorEvent(message=message.message))
        elif isinstance(message, RawOutput):
            emit(OutputEvent(text=message.text))
        elif isinstance(message, UnknownMessage):
            logger.debug("Unrecognized stream message", extra={"type": message.type})
            emit(OutputEvent(text=line))

    def _capture_session_id(self, session_id: str | None) -> None:
        if self._session_id_extracted or not session_id:
            return
        self._session_id = session_id
        self._session_id_extracted = True
        logger.info("Session id captured", extra={"session_id": session_id})

    def _emit_text(self, text: str, turn: TurnResult) -> None:
        if not text:
            return
        turn.texts.append(text)
        self._bus.emit(OutputEvent(text=text))

    def _emit_tool_result(self, block: ToolResult) -> None:
        self._bus.emit(
            ToolResultEvent(tool_use_id=block.tool_use_id, content=block.content, is_error=block.is_error)
        )

    def _emit_usage(self, usage: TokenUsage) -> None:
        self._bus.emit(
            TokenUsageEvent(
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                total_tokens=usage.total_tokens,
                cache_creation_input_tokens=usage.cache_creation_input_tokens,
                cache_read_input_tokens=usage.cache_read_input_tokens,
            )
        )

    async def _handle_tool_use(self, tool_use: ToolUse, mode: PermissionMode) -> None:
        self._set_status(SessionStatus.WAITING)
        try:
            decision = await self._gate.authorize(
                tool_use.name, tool_use.input, tool_use_id=tool_use.id, mode=mode
            )
        except PermissionCancelledError as exc:
            self._abort = self._abort or exc
            return
        finally:
            if self._status is SessionStatus.WAITING:
                self._set_status(SessionStatus.BUSY)

        if decision is None:
            self._bus.emit(ToolUseEvent(id=tool_use.id, name=tool_use.name, input=tool_use.input))
            return
        if decision.approved:
            return
        self._bus.emit(
            PermissionDeniedEvent(
                request_id=decision.request_id, tool_name=tool_use.name, reason=decision.reason
            )
        )
        self._abort = PermissionDeniedError(decision.request_id, tool_use.name, decision.reason)

    async def terminate(self) -> None:
        """Reject pending permissions and stop the running process, if any."""

        if self._inflight and self._abort is None:
            self._abort = SessionTerminatedError("Session terminated")
        self._gate.reject_all("Session terminated")
        process = self._process
        if process is not None:
            await process.terminate()


__all__ = ["ClaudeSession", "SessionStatus", "TurnResult"]

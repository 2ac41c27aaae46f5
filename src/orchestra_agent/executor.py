"""Task execution: provision a workspace, run the command, report, clean up."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .claude import ClaudeNotFoundError, ClaudeRunner, ClaudeSession, TurnResult, WorkerBusyError
from .config import AgentSettings, get_settings
from .events import EventBus, TaskCompleteEvent, TaskErrorEvent, WorkerStatusEvent
from .models import ClaudeConfig, PermissionMode, PermissionResponse, TaskAssignment
from .permissions import PermissionGate
from .process import CommandResult, ManagedProcess, build_environment
from .repository import RepositoryManager, Workspace

logger = logging.getLogger(__name__)


class TaskCancelledError(RuntimeError):
    """Raised inside a task that was cancelled while it ran."""


class CommandFailedError(RuntimeError):
    """Raised when a task's command exits with a non-zero status."""

    def __init__(self, result: CommandResult) -> None:
        message = f"Command exited with code {result.returncode}"
        detail = result.stderr.strip()
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.result = result


class ConversationError(RuntimeError):
    """Raised when a conversation cannot be opened or is not open."""


class WorkerState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"


@dataclass(slots=True)
class Conversation:
    """A CLI conversation kept open in its workspace between follow-up inputs."""

    assignment: TaskAssignment
    workspace: Workspace
    session: ClaudeSession

    @property
    def task_id(self) -> str:
        return self.assignment.task_id

    def to_dict(self) -> dict[str, str | None]:
        return {
            "task_id": self.task_id,
            "workspace_id": self.workspace.id,
            "path": str(self.session.working_directory),
            "session_id": self.session.session_id,
        }


class TaskExecutor:
    """Runs one task at a time against a per-task copy of its repository."""

    def __init__(
        self,
        repositories: RepositoryManager,
        *,
        settings: AgentSettings | None = None,
        runner: ClaudeRunner | None = None,
        bus: EventBus | None = None,
        gate: PermissionGate | None = None,
        cli_command: str = "claude",
        name: str = "worker-1",
    ) -> None:
        self._settings = settings or get_settings()
        self._repositories = repositories
        self._runner = runner
        self._bus = bus or EventBus()
        self._gate = gate or PermissionGate(self._settings.permission_mode, emit=self._bus.emit)
        self._cli_command = cli_command
        self._name = name
        self._lock = asyncio.Lock()
        self._state = WorkerState.IDLE
        self._current: TaskAssignment | None = None
        self._workspace: Workspace | None = None
        self._process: ManagedProcess | None = None
        self._session: ClaudeSession | None = None
        self._cancelled: set[str] = set()
        self._last_session_id: str | None = None
        self._conversations: dict[str, Conversation] = {}
        self._reported: tuple[WorkerState, str | None] = (WorkerState.IDLE, None)

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def gate(self) -> PermissionGate:
        return self._gate

    @property
    def repositories(self) -> RepositoryManager:
        return self._repositories

    @property
    def runner(self) -> ClaudeRunner | None:
        return self._runner

    @property
    def current_task_id(self) -> str | None:
        return self._current.task_id if self._current is not None else None

    @property
    def last_session_id(self) -> str | None:
        return self._last_session_id

    @property
    def mode(self) -> PermissionMode:
        return self._gate.mode

    def set_mode(self, mode: PermissionMode | str) -> PermissionMode:
        if self._state is WorkerState.BUSY:
            raise WorkerBusyError("Cannot change mode while a task is running")
        self._gate.mode = mode
        logger.info("Permission mode changed", extra={"worker": self._name, "mode": self._gate.mode.value})
        return self._gate.mode

    def respond_permission(self, response: PermissionResponse) -> bool:
        return self._gate.respond(response)

    def uses_cli(self, assignment: TaskAssignment) -> bool:
        return assignment.prompt is not None or Path(assignment.command).name == self._cli_command

    def conversations(self) -> list[Conversation]:
        return list(self._conversations.values())

    def get_conversation(self, task_id: str) -> Conversation | None:
        return self._conversations.get(task_id)

    def workspaces_in_use(self) -> set[str]:
        in_use = {conversation.workspace.id for conversation in self._conversations.values()}
        if self._workspace is not None:
            in_use.add(self._workspace.id)
        return in_use

    def status(self) -> dict[str, object]:
        return {
            "name": self._name,
            "state": self._state.value,
            "task_id": self.current_task_id,
            "mode": self._gate.mode.value,
            "pending_permissions": [
                {"id": request.id, "tool": request.tool_name, "description": request.description}
                for request in self._gate.pending.values()
            ],
            "active_workspaces": [workspace.id for workspace in self._repositories.active_workspaces()],
            "conversations": [conversation.to_dict() for conversation in self._conversations.values()],
            "last_session_id": self._last_session_id,
            "claude_available": self._runner is not None,
        }

    def _set_state(self, state: WorkerState, task_id: str | None) -> None:
        self._state = state
        if (state, task_id) == self._reported:
            return
        self._reported = (state, task_id)
        self._bus.emit(WorkerStatusEvent(status=state.value, task_id=task_id))

    async def handle_task(self, assignment: TaskAssignment) -> CommandResult | None:
        """Run one assignment end to end.

        Every outcome is reported on the bus as a task-complete or task-error
        event; exceptions never escape. Returns the command result on success.
        """

        async with self._lock:
            return await self._handle(assignment)

    async def _handle(self, assignment: TaskAssignment) -> CommandResult | None:
        task_id = assignment.task_id
        self._current = assignment
        self._set_state(WorkerState.BUSY, task_id)
        logger.info(
            "Task started",
            extra={
                "worker": self._name,
                "task_id": task_id,
                "repository": assignment.repository.name,
                "command": assignment.command,
            },
        )
        workspace: Workspace | None = None
        try:
            workspace = await self._repositories.create_workspace(assignment.repository, task_id)
            self._workspace = workspace
            self._raise_if_cancelled(task_id)
            cwd = self._resolve_cwd(workspace, assignment)
            if self.uses_cli(assignment):
                result = await self._run_cli(assignment, cwd)
            else:
                result = await self._run_command(assignment, cwd)
            self._raise_if_cancelled(task_id)
            if not result.ok:
                raise CommandFailedError(result)
        except Exception as exc:
            self._report_failure(task_id, exc)
            return None
        else:
            logger.info("Task completed", extra={"worker": self._name, "task_id": task_id})
            self._bus.emit(
                TaskCompleteEvent(
                    task_id=task_id, success=True, output=result.stdout, error=None, stderr=result.stderr
                )
            )
            return result
        finally:
            self._process = None
            self._session = None
            self._workspace = None
            if workspace is not None:
                await self._repositories.cleanup_workspace(workspace.id)
            self._cancelled.discard(task_id)
            self._current = None
            self._set_state(WorkerState.IDLE, None)

    def _report_failure(self, task_id: str, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        if task_id in self._cancelled:
            message = f"Task {task_id} cancelled"
        logger.error("Task failed", extra={"worker": self._name, "task_id": task_id, "error": message})
        self._state = WorkerState.ERROR
        self._bus.emit(TaskErrorEvent(task_id=task_id, error=message))

    def _raise_if_cancelled(self, task_id: str) -> None:
        if task_id in self._cancelled:
            raise TaskCancelledError(f"Task {task_id} cancelled")

    @staticmethod
    def _resolve_cwd(workspace: Workspace, assignment: TaskAssignment) -> Path:
        if not assignment.working_directory:
            return workspace.path
        cwd = workspace.path / assignment.working_directory
        if not cwd.is_dir():
            raise FileNotFoundError(f"Working directory {assignment.working_directory} does not exist")
        return cwd

    async def _run_command(self, assignment: TaskAssignment, cwd: Path) -> CommandResult:
        args = [assignment.command, *assignment.args]
        process = await ManagedProcess.spawn(
            args,
            cwd=cwd,
            env=build_environment(assignment.env),
            grace_seconds=self._settings.terminate_grace_seconds,
        )
        self._process = process
        if assignment.task_id in self._cancelled:
            await process.terminate()
        result = await process.communicate()
        logger.info(
            "Command finished",
            extra={"worker": self._name, "task_id": assignment.task_id, "returncode": result.returncode},
        )
        return result

    def _instruction(self, assignment: TaskAssignment) -> str | None:
        prompt = assignment.prompt or " ".join(assignment.args)
        return prompt if prompt.strip() else None

    def _new_session(self, assignment: TaskAssignment, cwd: Path) -> ClaudeSession:
        if self._runner is None:
            raise ClaudeNotFoundError("Claude CLI is not available on this agent")
        return ClaudeSession(
            self._runner,
            working_directory=cwd,
            bus=self._bus,
            gate=self._gate,
            config=assignment.claude_config or ClaudeConfig(),
            session_id=assignment.session_id,
            api_key=self._settings.anthropic_api_key,
            base_url=self._settings.anthropic_base_url,
            model=self._settings.claude_default_model,
            env=assignment.env,
            task_id=assignment.task_id,
            report_status=False,
        )

    async def _run_cli(self, assignment: TaskAssignment, cwd: Path) -> CommandResult:
        session = self._new_session(assignment, cwd)
        prompt = self._instruction(assignment)
        if prompt is None:
            raise ValueError("Claude task requires a prompt")
        self._session = session
        turn = await session.send_command(prompt)
        self._last_session_id = turn.session_id
        return CommandResult(
            args=(self._cli_command, prompt),
            returncode=turn.returncode,
            stdout=turn.output,
            stderr=turn.stderr,
        )

    async def start_conversation(self, assignment: TaskAssignment) -> Conversation | None:
        """Open a CLI conversation whose workspace survives until it is stopped.

        The assignment's prompt, if any, is sent as the first turn. Provisioning
        failures are reported as a task error and return ``None``.
        """

        task_id = assignment.task_id
        if task_id in self._conversations:
            raise ConversationError(f"Conversation {task_id} is already open")
        async with self._lock:
            self._current = assignment
            self._set_state(WorkerState.BUSY, task_id)
            workspace: Workspace | None = None
            try:
                workspace = await self._repositories.create_workspace(assignment.repository, task_id)
                session = self._new_session(assignment, self._resolve_cwd(workspace, assignment))
            except Exception as exc:
                if workspace is not None:
                    await self._repositories.cleanup_workspace(workspace.id)
                self._report_failure(task_id, exc)
                self._current = None
                self._set_state(WorkerState.IDLE, None)
                return None
            conversation = Conversation(assignment=assignment, workspace=workspace, session=session)
            self._conversations[task_id] = conversation
            logger.info(
                "Conversation opened",
                extra={"worker": self._name, "task_id": task_id, "workspace_id": workspace.id},
            )
            instruction = self._instruction(assignment)
            if instruction is None:
                self._cancelled.discard(task_id)
                self._current = None
                self._set_state(WorkerState.IDLE, None)
            else:
                await self._turn(conversation, instruction)
        return conversation

    async def send_input(self, task_id: str, instruction: str) -> TurnResult | None:
        """Send a follow-up instruction; the CLI resumes the conversation's session."""

        conversation = self._conversations.get(task_id)
        if conversation is None:
            raise ConversationError(f"No open conversation for task {task_id}")
        async with self._lock:
            return await self._turn(conversation, instruction)

    async def _turn(self, conversation: Conversation, instruction: str) -> TurnResult | None:
        task_id = conversation.task_id
        self._current = conversation.assignment
        self._session = conversation.session
        self._set_state(WorkerState.BUSY, task_id)
        try:
            turn = await conversation.session.send_command(instruction)
            self._raise_if_cancelled(task_id)
        except Exception as exc:
            self._report_failure(task_id, exc)
            return None
        else:
            self._last_session_id = turn.session_id
            self._bus.emit(
                TaskCompleteEvent(
                    task_id=task_id, success=True, output=turn.output, error=None, stderr=turn.stderr
                )
            )
            return turn
        finally:
            self._session = None
            self._cancelled.discard(task_id)
            self._current = None
            self._set_state(WorkerState.IDLE, None)

    async def stop_conversation(self, task_id: str) -> bool:
        """Terminate a conversation's CLI process and delete its workspace."""

        conversation = self._conversations.pop(task_id, None)
        if conversation is None:
            logger.warning("Stop for unknown conversation", extra={"worker": self._name, "task_id": task_id})
            return False
        if self._session is conversation.session:
            await conversation.session.terminate()
        async with self._lock:
            await self._repositories.cleanup_workspace(conversation.workspace.id)
        logger.info("Conversation stopped", extra={"worker": self._name, "task_id": task_id})
        return True

    async def cancel_task(self, task_id: str) -> bool:
        """Stop the running task if it is ``task_id``; its workspace is then removed."""

        if self.current_task_id != task_id:
            logger.warning("Cancel for task that is not running", extra={"worker": self._name, "task_id": task_id})
            return False
        self._cancelled.add(task_id)
        logger.info("Cancelling task", extra={"worker": self._name, "task_id": task_id})
        if self._session is not None:
            await self._session.terminate()
        if self._process is not None:
            await self._process.terminate()
        return True

    async def serve(self, assignments: asyncio.Queue[TaskAssignment | None]) -> None:
        """Consume assignments until a ``None`` sentinel arrives."""

        while True:
            assignment = await assignments.get()
            try:
                if assignment is None:
                    return
                await self.handle_task(assignment)
            finally:
                assignments.task_done()

    async def sweep(self, max_age_hours: float | None = None) -> list[str]:
        age = max_age_hours if max_age_hours is not None else self._settings.workspace_max_age_hours
        removed = await self._repositories.cleanup_old_workspaces(age, keep=self.workspaces_in_use())
        if removed:
            logger.info("Removed stale workspaces", extra={"count": len(removed)})
        return removed

    async def shutdown(self) -> None:
        task_id = self.current_task_id
        if task_id is not None:
            await self.cancel_task(task_id)
        for conversation_id in list(self._conversations):
            await self.stop_conversation(conversation_id)
        self._gate.reject_all("Worker shutting down")


__all__ = [
    "CommandFailedError",
    "Conversation",
    "ConversationError",
    "TaskCancelledError",
    "TaskExecutor",
    "WorkerState",
]

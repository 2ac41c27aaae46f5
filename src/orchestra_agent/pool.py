"""A fixed set of task executors sharing one repository cache."""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from .claude import ClaudeRunner, TurnResult, WorkerBusyError
from .config import AgentSettings, get_settings
from .events import EventBus
from .executor import Conversation, ConversationError, TaskExecutor, WorkerState
from .models import PermissionMode, PermissionResponse, TaskAssignment
from .process import CommandResult
from .repository import RepositoryManager

logger = logging.getLogger(__name__)


class WorkerPool:
    """Dispatches assignments to idle executors.

    Executors share the event bus and the repository manager, so cache clones
    are reused across workers while each task still gets its own workspace.
    """

    def __init__(self, executors: Sequence[TaskExecutor], *, settings: AgentSettings | None = None) -> None:
        if not executors:
            raise ValueError("WorkerPool requires at least one executor")
        self._settings = settings or get_settings()
        self._executors = list(executors)
        self._queue: asyncio.Queue[TaskAssignment | None] | None = None
        self._serving: list[asyncio.Task[None]] = []

    @classmethod
    def create(
        cls,
        repositories: RepositoryManager,
        *,
        size: int = 1,
        settings: AgentSettings | None = None,
        runner: ClaudeRunner | None = None,
        bus: EventBus | None = None,
    ) -> "WorkerPool":
        settings = settings or get_settings()
        bus = bus or EventBus()
        executors = [
            TaskExecutor(repositories, settings=settings, runner=runner, bus=bus, name=f"worker-{index}")
            for index in range(1, max(size, 1) + 1)
        ]
        logger.info("Worker pool created", extra={"size": len(executors)})
        return cls(executors, settings=settings)

    @property
    def executors(self) -> list[TaskExecutor]:
        return list(self._executors)

    @property
    def bus(self) -> EventBus:
        return self._executors[0].bus

    @property
    def repositories(self) -> RepositoryManager:
        return self._executors[0].repositories

    @property
    def size(self) -> int:
        return len(self._executors)

    @property
    def mode(self) -> PermissionMode:
        return self._executors[0].mode

    def idle_executor(self) -> TaskExecutor | None:
        for executor in self._executors:
            if executor.state is not WorkerState.BUSY:
                return executor
        return None

    def find(self, task_id: str) -> TaskExecutor | None:
        """Executor running ``task_id`` or holding its conversation."""

        for executor in self._executors:
            if executor.current_task_id == task_id or executor.get_conversation(task_id) is not None:
                return executor
        return None

    def _claim(self) -> TaskExecutor:
        executor = self.idle_executor()
        if executor is None:
            raise WorkerBusyError("All workers are busy")
        return executor

    async def assign(self, assignment: TaskAssignment) -> CommandResult | None:
        """Run ``assignment`` on an idle executor, refusing when none is free."""

        executor = self._claim()
        logger.info("Task dispatched", extra={"worker": executor.name, "task_id": assignment.task_id})
        return await executor.handle_task(assignment)

    def start(self) -> None:
        """Start draining the submission queue with every executor."""

        if self._queue is not None:
            return
        self._queue = asyncio.Queue()
        self._serving = [asyncio.create_task(executor.serve(self._queue)) for executor in self._executors]

    async def submit(self, assignment: TaskAssignment) -> None:
        """Queue ``assignment`` for the next executor that becomes idle."""

        if self._queue is None:
            raise RuntimeError("WorkerPool.start() must be called before submit()")
        await self._queue.put(assignment)

    @property
    def queued(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        """Let queued work finish, then stop the serving loops."""

        if self._queue is None:
            return
        for _ in self._serving:
            await self._queue.put(None)
        await asyncio.gather(*self._serving)
        self._serving = []
        self._queue = None

    async def cancel_task(self, task_id: str) -> bool:
        executor = self.find(task_id)
        if executor is None:
            logger.warning("Cancel for task that is not running", extra={"task_id": task_id})
            return False
        return await executor.cancel_task(task_id)

    def respond_permission(self, response: PermissionResponse) -> bool:
        for executor in self._executors:
            if response.request_id in executor.gate.pending:
                return executor.respond_permission(response)
        logger.warning("Permission response for unknown request", extra={"request_id": response.request_id})
        return False

    def set_mode(self, mode: PermissionMode | str) -> PermissionMode:
        if any(executor.state is WorkerState.BUSY for executor in self._executors):
            raise WorkerBusyError("Cannot change mode while a task is running")
        current = self.mode
        for executor in self._executors:
            current = executor.set_mode(mode)
        return current

    async def start_conversation(self, assignment: TaskAssignment) -> Conversation | None:
        if self.find(assignment.task_id) is not None:
            raise ConversationError(f"Conversation {assignment.task_id} is already open")
        return await self._claim().start_conversation(assignment)

    def _owner(self, task_id: str) -> TaskExecutor:
        for executor in self._executors:
            if executor.get_conversation(task_id) is not None:
                return executor
        raise ConversationError(f"No open conversation for task {task_id}")

    async def send_input(self, task_id: str, instruction: str) -> TurnResult | None:
        return await self._owner(task_id).send_input(task_id, instruction)

    async def stop_conversation(self, task_id: str) -> bool:
        for executor in self._executors:
            if executor.get_conversation(task_id) is not None:
                return await executor.stop_conversation(task_id)
        logger.warning("Stop for unknown conversation", extra={"task_id": task_id})
        return False

    def get_conversation(self, task_id: str) -> Conversation | None:
        for executor in self._executors:
            conversation = executor.get_conversation(task_id)
            if conversation is not None:
                return conversation
        return None

    def conversations(self) -> list[Conversation]:
        return [conversation for executor in self._executors for conversation in executor.conversations()]

    async def sweep(self, max_age_hours: float | None = None) -> list[str]:
        """Remove stale workspaces that no executor is using."""

        age = max_age_hours if max_age_hours is not None else self._settings.workspace_max_age_hours
        keep: set[str] = set()
        for executor in self._executors:
            keep |= executor.workspaces_in_use()
        removed = await self.repositories.cleanup_old_workspaces(age, keep=keep)
        if removed:
            logger.info("Removed stale workspaces", extra={"count": len(removed)})
        return removed

    def status(self) -> dict[str, object]:
        workers = [executor.status() for executor in self._executors]
        busy = sum(1 for worker in workers if worker["state"] == WorkerState.BUSY.value)
        return {
            "size": len(workers),
            "busy": busy,
            "idle": len(workers) - busy,
            "queued": self.queued,
            "mode": self.mode.value,
            "workers": workers,
        }

    async def shutdown(self) -> None:
        for executor in self._executors:
            await executor.shutdown()
        for task in self._serving:
            task.cancel()
        await asyncio.gather(*self._serving, return_exceptions=True)
        self._serving = []
        self._queue = None
        logger.info("Worker pool stopped", extra={"size": len(self._executors)})


__all__ = ["WorkerPool"]

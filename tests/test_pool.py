from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from orchestra_agent.claude import ClaudeRunner, WorkerBusyError
from orchestra_agent.config import AgentSettings
from orchestra_agent.events import EventBus, TaskCompleteEvent, TaskErrorEvent
from orchestra_agent.executor import ConversationError, TaskExecutor, WorkerState
from orchestra_agent.models import PermissionResponse, TaskAssignment
from orchestra_agent.pool import WorkerPool
from orchestra_agent.repository import RepositoryManager


class CountingGit:
    def __init__(self) -> None:
        self.clones = 0

    async def clone(self, url: str, target: Path, *, branch: str, depth: int = 1) -> None:
        self.clones += 1
        (target / ".git").mkdir(parents=True)
        (target / "README.md").write_text("pooled\n", encoding="utf-8")


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> AgentSettings:
    monkeypatch.setenv("ORCHESTRA_BASE_DIR", str(tmp_path / "base"))
    monkeypatch.setenv("ORCHESTRA_TERMINATE_GRACE_SECONDS", "1")
    monkeypatch.delenv("ORCHESTRA_PERMISSION_MODE", raising=False)
    monkeypatch.delenv("CLAUDE_MODEL", raising=False)
    return AgentSettings()


def _pool(settings: AgentSettings, *, size: int = 2, runner: ClaudeRunner | None = None):
    git = CountingGit()
    bus = EventBus()
    events: list = []
    bus.subscribe(events.append)
    repositories = RepositoryManager(settings.base_dir, git=git)
    pool = WorkerPool.create(repositories, size=size, settings=settings, runner=runner, bus=bus)
    return pool, events, git


def _assignment(task_id: str, *args: str, **overrides) -> TaskAssignment:
    payload = {
        "taskId": task_id,
        "repository": {
            "id": "r1",
            "name": "widgets",
            "url": "https://github.com/acme/widgets.git",
            "settings": {"autoUpdate": False},
        },
        "command": "sh",
        "args": list(args) or ["-c", f"echo {task_id}"],
    }
    payload.update(overrides)
    return TaskAssignment.model_validate(payload)


def _lifecycle(events: list) -> list:
    return [event for event in events if isinstance(event, (TaskCompleteEvent, TaskErrorEvent))]


async def _wait_until(predicate, attempts: int = 500) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition never became true")


def test_create_builds_named_executors_sharing_cache_and_bus(settings: AgentSettings) -> None:
    pool, _, _ = _pool(settings, size=3)

    assert pool.size == 3
    assert [executor.name for executor in pool.executors] == ["worker-1", "worker-2", "worker-3"]
    assert {id(executor.repositories) for executor in pool.executors} == {id(pool.repositories)}
    assert {id(executor.bus) for executor in pool.executors} == {id(pool.bus)}
    assert pool.idle_executor() is pool.executors[0]


def test_pool_requires_an_executor(settings: AgentSettings) -> None:
    with pytest.raises(ValueError):
        WorkerPool([], settings=settings)


def test_assign_uses_idle_workers_and_refuses_when_all_busy(settings: AgentSettings) -> None:
    pool, events, git = _pool(settings, size=2)

    async def scenario():
        first = asyncio.create_task(pool.assign(_assignment("a", "-c", "exec sleep 30")))
        await _wait_until(lambda: pool.executors[0].state is WorkerState.BUSY)
        second = asyncio.create_task(pool.assign(_assignment("b", "-c", "exec sleep 30")))
        await _wait_until(lambda: pool.executors[1].state is WorkerState.BUSY)
        assert pool.status()["busy"] == 2
        with pytest.raises(WorkerBusyError):
            await pool.assign(_assignment("c"))
        with pytest.raises(WorkerBusyError):
            pool.set_mode("yolo")
        await asyncio.sleep(0.2)
        assert pool.find("b") is pool.executors[1]
        assert await pool.cancel_task("b") is True
        assert await pool.cancel_task("missing") is False
        assert await pool.cancel_task("a") is True
        await asyncio.gather(first, second)

    asyncio.run(scenario())

    assert sorted(event.task_id for event in _lifecycle(events)) == ["a", "b"]
    assert all(isinstance(event, TaskErrorEvent) for event in _lifecycle(events))
    assert git.clones == 1
    assert pool.status()["idle"] == 2
    assert pool.repositories.active_workspaces() == []


def test_submitted_work_is_spread_over_the_queue(settings: AgentSettings) -> None:
    pool, events, _ = _pool(settings, size=2)

    async def scenario():
        pool.start()
        for task_id in ("q1", "q2", "q3"):
            await pool.submit(_assignment(task_id))
        await pool.join()
        queued = pool.status()["queued"]
        await pool.stop()
        return queued

    queued = asyncio.run(scenario())

    assert queued == 0
    assert sorted((event.task_id, event.output) for event in _lifecycle(events)) == [
        ("q1", "q1\n"),
        ("q2", "q2\n"),
        ("q3", "q3\n"),
    ]


def test_submit_before_start_is_refused(settings: AgentSettings) -> None:
    pool, _, _ = _pool(settings, size=1)

    with pytest.raises(RuntimeError):
        asyncio.run(pool.submit(_assignment("early")))


def test_worker_recovers_after_a_failed_task(settings: AgentSettings) -> None:
    pool, events, _ = _pool(settings, size=1)

    async def scenario():
        await pool.assign(_assignment("broken", "-c", "exit 3"))
        assert pool.executors[0].state is WorkerState.IDLE
        await pool.assign(_assignment("after"))

    asyncio.run(scenario())

    broken, after = _lifecycle(events)
    assert isinstance(broken, TaskErrorEvent)
    assert isinstance(after, TaskCompleteEvent) and after.output == "after\n"


def test_set_mode_reaches_every_worker(settings: AgentSettings) -> None:
    pool, _, _ = _pool(settings, size=2)

    assert pool.set_mode("plan").value == "plan"
    assert [executor.mode.value for executor in pool.executors] == ["plan", "plan"]
    assert pool.status()["mode"] == "plan"


def test_permission_responses_reach_the_worker_that_asked(settings: AgentSettings) -> None:
    pool, _, _ = _pool(settings, size=2)
    asking = pool.executors[1]

    async def scenario():
        waiter = asyncio.create_task(asking.gate.request("Write"))
        await asyncio.sleep(0)
        (request_id,) = asking.gate.pending
        unknown = pool.respond_permission(PermissionResponse(request_id="nope", action="approve"))
        resolved = pool.respond_permission(PermissionResponse(request_id=request_id, action="approve"))
        return unknown, resolved, await waiter

    unknown, resolved, decision = asyncio.run(scenario())

    assert unknown is False
    assert resolved is True
    assert decision.approved is True


def _fake_claude(tmp_path: Path) -> Path:
    lines = [
        {"type": "system", "subtype": "init", "session_id": "sess-pool"},
        {"type": "result", "subtype": "success", "result": "ok"},
    ]
    stream = tmp_path / "stream.jsonl"
    stream.write_text("".join(json.dumps(line) + "\n" for line in lines), encoding="utf-8")
    argv_log = tmp_path / "argv.log"
    script = tmp_path / "claude"
    script.write_text(
        f'#!/bin/sh\necho "$2" >> "{argv_log}"\ncat "{stream}"\n',
        encoding="utf-8",
    )
    script.chmod(0o755)
    return script


def test_conversations_are_routed_to_their_owner(settings: AgentSettings, tmp_path: Path) -> None:
    pool, events, _ = _pool(settings, size=2, runner=ClaudeRunner(_fake_claude(tmp_path)))

    async def scenario():
        busy = asyncio.create_task(pool.assign(_assignment("long", "-c", "exec sleep 30")))
        await _wait_until(lambda: pool.executors[0].state is WorkerState.BUSY)
        conversation = await pool.start_conversation(
            _assignment("chat", command="claude", args=[], prompt="describe the repo")
        )
        with pytest.raises(ConversationError):
            await pool.start_conversation(_assignment("chat", command="claude", args=[]))
        owner = pool.find("chat")
        turn = await pool.send_input("chat", "summarize the readme")
        kept = await pool.sweep(0.000001)
        with pytest.raises(ConversationError):
            await pool.send_input("ghost", "hello")
        stopped = await pool.stop_conversation("chat")
        unknown = await pool.stop_conversation("ghost")
        await pool.cancel_task("long")
        await busy
        return conversation, owner, turn, kept, stopped, unknown

    conversation, owner, turn, kept, stopped, unknown = asyncio.run(scenario())

    assert conversation is not None
    assert owner is pool.executors[1]
    assert turn is not None and turn.session_id == "sess-pool"
    assert conversation.workspace.id not in kept
    assert stopped is True
    assert unknown is False
    assert pool.conversations() == []
    assert (tmp_path / "argv.log").read_text(encoding="utf-8").splitlines() == [
        "describe the repo",
        "--resume",
    ]
    assert [event.task_id for event in _lifecycle(events) if isinstance(event, TaskCompleteEvent)] == [
        "chat",
        "chat",
    ]


def test_shutdown_closes_conversations_and_workers(settings: AgentSettings, tmp_path: Path) -> None:
    pool, _, _ = _pool(settings, size=2, runner=ClaudeRunner(_fake_claude(tmp_path)))

    async def scenario():
        pool.start()
        conversation = await pool.start_conversation(_assignment("chat", command="claude", args=[]))
        await pool.shutdown()
        return conversation

    conversation = asyncio.run(scenario())

    assert conversation is not None
    assert not conversation.workspace.path.exists()
    assert pool.conversations() == []
    assert pool.status()["queued"] == 0


def test_status_lists_each_worker(settings: AgentSettings) -> None:
    pool, _, _ = _pool(settings, size=2)

    status = pool.status()

    assert (status["size"], status["busy"], status["idle"], status["queued"]) == (2, 0, 2, 0)
    assert [worker["name"] for worker in status["workers"]] == ["worker-1", "worker-2"]
    assert isinstance(pool.executors[0], TaskExecutor)

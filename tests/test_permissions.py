from __future__ import annotations

import asyncio
import itertools

import pytest

from orchestra_agent.events import ToolUseEvent
from orchestra_agent.models import PermissionMode, PermissionResponse
from orchestra_agent.permissions import (
    PermissionCancelledError,
    PermissionGate,
    detect_operations,
    is_dangerous_tool,
    is_read_only_tool,
)


def _gate(mode: PermissionMode, events: list | None = None) -> PermissionGate:
    counter = itertools.count(1)
    return PermissionGate(
        mode,
        emit=events.append if events is not None else None,
        id_factory=lambda: f"p{next(counter)}",
    )


@pytest.mark.parametrize("tool", ["Write", "Edit", "MultiEdit", "Bash", "NotebookEdit", "shell_exec"])
def test_dangerous_tools(tool: str) -> None:
    assert is_dangerous_tool(tool)
    assert not is_read_only_tool(tool)


@pytest.mark.parametrize("tool", ["Read", "Grep", "Glob", "LS", "WebFetch", "mcp__docs__search_pages"])
def test_read_only_tools(tool: str) -> None:
    assert is_read_only_tool(tool)
    assert not is_dangerous_tool(tool)


def test_mode_policies() -> None:
    auto = _gate(PermissionMode.AUTO)
    assert auto.needs_approval("Write")
    assert not auto.needs_approval("Read")
    assert not auto.needs_approval("WebSearch")

    plan = _gate(PermissionMode.PLAN)
    assert not plan.needs_approval("Read")
    assert plan.needs_approval("Write")
    assert plan.needs_approval("SomethingUnknown")

    assert not _gate(PermissionMode.YOLO).needs_approval("Bash")
    # ask mode approves before dispatch, never per tool-use event
    assert not _gate(PermissionMode.ASK).needs_approval("Bash")


def test_explicit_mode_overrides_gate_mode() -> None:
    gate = _gate(PermissionMode.YOLO)

    assert gate.needs_approval("Write", mode=PermissionMode.AUTO)


def test_approve_resolves_waiter_and_clears_pending() -> None:
    events: list = []
    gate = _gate(PermissionMode.AUTO, events)

    async def scenario():
        waiter = asyncio.create_task(gate.request("Write", {"file_path": "a.py"}, tool_use_id="tu-1"))
        await asyncio.sleep(0)
        assert set(gate.pending) == {"p1"}
        assert gate.handle_permission_response("p1", "approve") is True
        decision = await waiter
        return decision

    decision = asyncio.run(scenario())

    assert decision.approved is True
    assert decision.request_id == "p1"
    assert "p1" not in gate.pending
    assert not gate.has_pending
    assert events == [
        ToolUseEvent(
            id="tu-1",
            name="Write",
            input={"file_path": "a.py"},
            requires_permission=True,
            permission_request_id="p1",
        )
    ]


def test_deny_carries_reason() -> None:
    gate = _gate(PermissionMode.AUTO)

    async def scenario():
        waiter = asyncio.create_task(gate.request("Bash"))
        await asyncio.sleep(0)
        gate.respond(PermissionResponse(request_id="p1", action="deny", reason="not today"))
        return await waiter

    decision = asyncio.run(scenario())

    assert decision.approved is False
    assert decision.reason == "not today"


def test_second_response_for_same_request_is_ignored() -> None:
    gate = _gate(PermissionMode.AUTO)

    async def scenario():
        waiter = asyncio.create_task(gate.request("Bash"))
        await asyncio.sleep(0)
        first = gate.handle_permission_response("p1", "deny")
        second = gate.handle_permission_response("p1", "approve")
        decision = await waiter
        return first, second, decision

    first, second, decision = asyncio.run(scenario())

    assert first is True
    assert second is False
    assert decision.approved is False


def test_unknown_request_id_is_a_no_op() -> None:
    gate = _gate(PermissionMode.AUTO)

    assert gate.handle_permission_response("missing", "approve") is False


def test_invalid_action_is_rejected() -> None:
    gate = _gate(PermissionMode.AUTO)

    with pytest.raises(ValueError):
        gate.handle_permission_response("p1", "maybe")


def test_reject_all_fails_every_waiter() -> None:
    gate = _gate(PermissionMode.PLAN)

    async def scenario():
        waiters = [asyncio.create_task(gate.request(tool)) for tool in ("Write", "Bash")]
        await asyncio.sleep(0)
        rejected = gate.reject_all("shutting down")
        results = await asyncio.gather(*waiters, return_exceptions=True)
        return rejected, results

    rejected, results = asyncio.run(scenario())

    assert rejected == 2
    assert all(isinstance(result, PermissionCancelledError) for result in results)
    assert not gate.has_pending
    assert gate.reject_all() == 0


def test_authorize_skips_tools_that_need_no_approval() -> None:
    gate = _gate(PermissionMode.YOLO)

    async def scenario():
        return await gate.authorize("Bash", {"command": "rm -rf build"}, tool_use_id="t", mode=PermissionMode.YOLO)

    assert asyncio.run(scenario()) is None
    assert not gate.has_pending


@pytest.mark.parametrize(
    ("instruction", "kinds"),
    [
        ("Create a new file called utils.py", ["create_file"]),
        ("Please modify the README", ["edit_file"]),
        ("run the test suite", ["execute"]),
        ("创建一个新文件并运行它", ["create_file", "execute"]),
        ("Explain what this module does", []),
    ],
)
def test_detect_operations(instruction: str, kinds: list[str]) -> None:
    assert [operation.kind for operation in detect_operations(instruction)] == kinds


def test_precheck_denial_stops_at_first_denied_operation() -> None:
    events: list = []
    gate = _gate(PermissionMode.ASK, events)

    async def scenario():
        check = asyncio.create_task(gate.precheck("Create a new file and run it", mode=PermissionMode.ASK))
        await asyncio.sleep(0)
        gate.handle_permission_response("p1", "deny", "no new files")
        return await check

    denial = asyncio.run(scenario())

    assert denial is not None
    operation, decision = denial
    assert operation.kind == "create_file"
    assert decision.reason == "no new files"
    # the execute operation was never asked about
    assert [event.name for event in events] == ["Write"]


def test_precheck_outside_ask_mode_never_pends() -> None:
    gate = _gate(PermissionMode.YOLO)

    assert asyncio.run(gate.precheck("delete everything and run rm", mode=PermissionMode.YOLO)) is None
    assert not gate.has_pending


def test_mode_setter_accepts_strings() -> None:
    gate = _gate(PermissionMode.AUTO)

    gate.mode = "plan"

    assert gate.mode is PermissionMode.PLAN

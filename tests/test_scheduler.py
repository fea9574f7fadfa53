"""
Tests for the tool call scheduler.
"""

import asyncio
import json
import random

import pytest

from relay_agent.agent.cancellation import CancelToken
from relay_agent.errors import CheckpointError, InvalidTransitionError, SchedulerBusyError
from relay_agent.llm.base import Message
from relay_agent.tools.base import (
    ConfirmationDetails,
    ConfirmationKind,
    Tool,
    ToolCallRequest,
    ToolParameter,
    ToolResult,
)
from relay_agent.tools.checkpoint import CheckpointManager
from relay_agent.tools.exec_approval import ApprovalManager
from relay_agent.tools.registry import ToolRegistry
from relay_agent.tools.scheduler import (
    CANCELLED_BY_TOKEN,
    CANCELLED_BY_USER,
    ToolCallRecord,
    ToolCallScheduler,
    ToolCallStatus,
)

V = ToolCallStatus.VALIDATING
A = ToolCallStatus.AWAITING_APPROVAL
E = ToolCallStatus.EXECUTING
S = ToolCallStatus.SUCCESS


class Calls:
    """Records the arguments each handler ran with."""

    def __init__(self):
        self.seen: list[tuple[str, dict]] = []


def _confirm_delete(args):
    return ConfirmationDetails(kind=ConfirmationKind.EDIT, title="Confirm Delete", file_name=args.get("path"))


def _registry(calls: Calls, **overrides) -> ToolRegistry:
    async def list_files(path: str = ".") -> ToolResult:
        calls.seen.append(("list_files", {"path": path}))
        return ToolResult(success=True, output="a.txt\nb.txt")

    async def delete_file(path: str) -> ToolResult:
        calls.seen.append(("delete_file", {"path": path}))
        return ToolResult(success=True, output=f"deleted {path}")

    async def explode() -> ToolResult:
        raise RuntimeError("disk on fire")

    async def refuse() -> ToolResult:
        return ToolResult(success=False, error="permission denied")

    tools = {
        "list_files": Tool("list_files", "List files", [ToolParameter("path", "string", "Dir", required=False)], list_files),
        "delete_file": Tool(
            "delete_file",
            "Delete a file",
            [ToolParameter("path", "string", "File")],
            delete_file,
            confirm=_confirm_delete,
        ),
        "explode": Tool("explode", "Always raises", [], explode),
        "refuse": Tool("refuse", "Always fails", [], refuse),
    }
    tools.update(overrides)
    return ToolRegistry(tools.values())


def _request(name: str, call_id: str = "c1", **args) -> ToolCallRequest:
    return ToolCallRequest(call_id=call_id, name=name, args=args)


@pytest.mark.asyncio
async def test_executes_without_confirmation():
    """Test that a tool without confirmation runs straight away."""
    calls = Calls()
    updates = []
    scheduler = ToolCallScheduler(
        _registry(calls),
        ApprovalManager(),
        on_update=lambda records: updates.append([r.status for r in records]),
    )

    batch = await scheduler.schedule([_request("list_files", path="src")], CancelToken())

    record = batch.records[0]
    assert record.status == S
    assert record.status_history == [V, E, S]
    assert record.response.response == {"output": "a.txt\nb.txt"}
    assert record.duration_ms is not None
    assert calls.seen == [("list_files", {"path": "src"})]
    assert batch.complete
    assert not scheduler.is_running
    assert updates == [[V], [E], [S]]


@pytest.mark.asyncio
async def test_unknown_tool_is_an_error():
    """Test that unregistered tools fail immediately."""
    scheduler = ToolCallScheduler(_registry(Calls()))

    batch = await scheduler.schedule([_request("teleport")], CancelToken())

    record = batch.records[0]
    assert record.status == ToolCallStatus.ERROR
    assert record.status_history == [V, ToolCallStatus.ERROR]
    assert record.response.response == {"error": 'Tool "teleport" not found in registry.'}


@pytest.mark.asyncio
async def test_approved_call_executes():
    """Test the confirmation path when the operator approves."""
    calls = Calls()
    approvals = ApprovalManager()
    surfaced = []

    def on_request(pending):
        surfaced.append(pending)
        approvals.approve(pending.call_id)

    approvals.on_request = on_request
    scheduler = ToolCallScheduler(_registry(calls), approvals)

    batch = await scheduler.schedule([_request("delete_file", path="x.txt")], CancelToken())

    record = batch.records[0]
    assert record.status_history == [V, A, E, S]
    assert record.confirmation.title == "Confirm Delete"
    assert surfaced[0].details.file_name == "x.txt"
    assert calls.seen == [("delete_file", {"path": "x.txt"})]
    assert approvals.list_pending() == []


@pytest.mark.asyncio
async def test_denied_call_is_cancelled_without_running():
    """Test that a denied call never executes and reports the cancellation."""
    calls = Calls()
    approvals = ApprovalManager()
    approvals.on_request = lambda pending: approvals.deny(pending.call_id)
    scheduler = ToolCallScheduler(_registry(calls), approvals)

    batch = await scheduler.schedule([_request("delete_file", path="x.txt")], CancelToken())

    record = batch.records[0]
    assert record.status_history == [V, A, ToolCallStatus.CANCELLED]
    assert record.response.response == {"error": CANCELLED_BY_USER}
    assert calls.seen == []
    assert batch.all_cancelled


@pytest.mark.asyncio
async def test_duplicate_call_ids_are_kept_apart():
    """Test that two approved calls sharing an id both run under distinct ids."""
    calls = Calls()
    approvals = ApprovalManager()
    approvals.on_request = lambda pending: approvals.approve(pending.call_id)
    scheduler = ToolCallScheduler(_registry(calls), approvals)

    batch = await scheduler.schedule(
        [_request("delete_file", "dup", path="a.txt"), _request("delete_file", "dup", path="b.txt")],
        CancelToken(),
    )

    assert [r.status for r in batch.records] == [S, S]
    assert batch.records[0].call_id == "dup"
    assert batch.records[1].call_id.startswith("delete_file-")
    assert len({p.function_response.id for p in batch.to_message().parts}) == 2
    assert sorted(path for _, args in calls.seen for path in args.values()) == ["a.txt", "b.txt"]


@pytest.mark.asyncio
async def test_modified_args_are_revalidated():
    """Test that edited arguments go through confirmation again and are used."""
    calls = Calls()
    approvals = ApprovalManager()
    asked = []

    def on_request(pending):
        asked.append(dict(pending.arguments))
        if len(asked) == 1:
            approvals.modify(pending.call_id, {"path": "y.txt"})
        else:
            approvals.approve(pending.call_id)

    approvals.on_request = on_request
    scheduler = ToolCallScheduler(_registry(calls), approvals)

    batch = await scheduler.schedule([_request("delete_file", path="x.txt")], CancelToken())

    record = batch.records[0]
    assert asked == [{"path": "x.txt"}, {"path": "y.txt"}]
    assert record.request.args == {"path": "y.txt"}
    assert record.status_history == [V, A, E, S]
    assert calls.seen == [("delete_file", {"path": "y.txt"})]


@pytest.mark.asyncio
async def test_proceed_always_skips_later_confirmation():
    """Test that an allow-listed tool is not confirmed again in the session."""
    calls = Calls()
    approvals = ApprovalManager()
    approvals.on_request = lambda pending: approvals.approve(pending.call_id, always=True)
    scheduler = ToolCallScheduler(_registry(calls), approvals)

    await scheduler.schedule([_request("delete_file", path="a")], CancelToken())
    batch = await scheduler.schedule([_request("delete_file", "c2", path="b")], CancelToken())

    assert batch.records[0].status_history == [V, E, S]


@pytest.mark.asyncio
async def test_yolo_mode_skips_confirmation():
    """Test that approval_required=False never asks."""
    calls = Calls()
    scheduler = ToolCallScheduler(_registry(calls), ApprovalManager(approval_required=False))

    batch = await scheduler.schedule([_request("delete_file", path="x.txt")], CancelToken())

    assert batch.records[0].status_history == [V, E, S]


@pytest.mark.asyncio
async def test_errors_are_isolated_per_call():
    """Test that a failing tool does not affect its siblings."""
    calls = Calls()
    scheduler = ToolCallScheduler(_registry(calls))

    batch = await scheduler.schedule(
        [_request("explode", "c1"), _request("list_files", "c2"), _request("refuse", "c3")],
        CancelToken(),
    )

    exploded, listed, refused = batch.records
    assert exploded.status == ToolCallStatus.ERROR
    assert exploded.response.response == {"error": "disk on fire"}
    assert listed.status == S
    assert refused.status == ToolCallStatus.ERROR
    assert refused.response.response == {"error": "permission denied"}
    assert [p.function_response.id for p in batch.response_parts] == ["c1", "c2", "c3"]
    assert batch.to_message().is_function_response()


@pytest.mark.asyncio
async def test_token_cancels_running_tool():
    """Test that tripping the token mid-execution cancels the call."""
    token = CancelToken()
    finished = []

    async def slow() -> ToolResult:
        token.cancel()
        await asyncio.sleep(10)
        finished.append(True)
        return ToolResult(success=True, output="too late")

    scheduler = ToolCallScheduler(_registry(Calls(), slow=Tool("slow", "Slow", [], slow)))

    batch = await scheduler.schedule([_request("slow")], token)

    record = batch.records[0]
    assert record.status_history == [V, E, ToolCallStatus.CANCELLED]
    assert record.response.response == {"error": CANCELLED_BY_TOKEN}
    assert record.result is None
    assert finished == []


@pytest.mark.asyncio
async def test_token_cancels_approval_wait():
    """Test that tripping the token while waiting for approval cancels the call."""
    token = CancelToken()
    approvals = ApprovalManager()
    approvals.on_request = lambda pending: token.cancel()
    scheduler = ToolCallScheduler(_registry(Calls()), approvals)

    batch = await scheduler.schedule([_request("delete_file", path="x")], token)

    assert batch.records[0].status_history == [V, A, ToolCallStatus.CANCELLED]
    assert approvals.list_pending() == []


@pytest.mark.asyncio
async def test_schedule_while_running_is_rejected():
    """Test that a second batch cannot start while one is active."""
    release = asyncio.Event()

    async def wait() -> ToolResult:
        await release.wait()
        return ToolResult(success=True, output="done")

    scheduler = ToolCallScheduler(_registry(Calls(), wait=Tool("wait", "Waits", [], wait)))
    first = asyncio.create_task(scheduler.schedule([_request("wait")], CancelToken()))
    await asyncio.sleep(0)

    assert scheduler.is_running
    with pytest.raises(SchedulerBusyError):
        await scheduler.schedule([_request("list_files", "c2")], CancelToken())

    release.set()
    batch = await first
    assert batch.records[0].status == S


class FakeSnapshots:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: list[str] = []

    async def snapshot(self, message: str) -> str:
        if self.fail:
            raise CheckpointError("git add failed (128): not a repository")
        self.messages.append(message)
        return "abc123"

    async def restore(self, commit_hash: str) -> None:
        return None


def _write_registry(calls: Calls) -> ToolRegistry:
    async def write_file(file_path: str, content: str) -> ToolResult:
        calls.seen.append(("write_file", {"file_path": file_path}))
        return ToolResult(success=True, output="ok")

    tool = Tool(
        "write_file",
        "Write",
        [ToolParameter("file_path", "string", "Path"), ToolParameter("content", "string", "Body")],
        write_file,
        restorable=True,
    )
    return ToolRegistry([tool])


@pytest.mark.asyncio
async def test_restorable_tool_is_checkpointed(tmp_path):
    """Test that a checkpoint file is written before a restorable tool runs."""
    calls = Calls()
    checkpoints = CheckpointManager(tmp_path, FakeSnapshots())
    scheduler = ToolCallScheduler(
        _write_registry(calls),
        checkpoints=checkpoints,
        history_provider=lambda: [Message.user("write it")],
    )

    batch = await scheduler.schedule([_request("write_file", file_path="src/a.py", content="x")], CancelToken())

    record = batch.records[0]
    assert record.status == S
    files = checkpoints.list_checkpoints()
    assert len(files) == 1
    assert files[0].name.endswith("-a.py-write_file.json")
    assert record.checkpoint == str(files[0])

    data = json.loads(files[0].read_text())
    assert data["toolCall"] == {"name": "write_file", "args": {"file_path": "src/a.py", "content": "x"}}
    assert data["commitHash"] == "abc123"
    assert data["filePath"] == "src/a.py"
    assert data["history"] == [Message.user("write it").to_dict()]


@pytest.mark.asyncio
async def test_checkpoint_failure_fails_the_call(tmp_path):
    """Test that the tool is not run when its checkpoint cannot be taken."""
    calls = Calls()
    scheduler = ToolCallScheduler(
        _write_registry(calls),
        checkpoints=CheckpointManager(tmp_path, FakeSnapshots(fail=True)),
    )

    batch = await scheduler.schedule([_request("write_file", file_path="a.py", content="x")], CancelToken())

    record = batch.records[0]
    assert record.status == ToolCallStatus.ERROR
    assert record.error.startswith("Could not create checkpoint:")
    assert calls.seen == []


def test_record_rejects_backward_transitions():
    """Test that terminal states are absorbing and moves go forward only."""
    record = ToolCallRecord(request=_request("x"))
    record.transition(E)

    with pytest.raises(InvalidTransitionError):
        record.transition(A)

    record.transition(S)
    with pytest.raises(InvalidTransitionError):
        record.transition(ToolCallStatus.CANCELLED)


@pytest.mark.parametrize("seed", range(25))
def test_record_status_sequence_is_monotonic(seed):
    """Test random transition attempts always leave a forward-only status trail."""
    rng = random.Random(seed)
    rank = {V: 0, A: 1, E: 2, S: 3, ToolCallStatus.ERROR: 3, ToolCallStatus.CANCELLED: 3}
    record = ToolCallRecord(request=_request("x"))

    for _ in range(20):
        target = rng.choice(list(ToolCallStatus))
        was_terminal = record.is_terminal
        try:
            record.transition(target)
        except InvalidTransitionError:
            continue
        assert not was_terminal

    ranks = [rank[s] for s in record.status_history]
    assert ranks == sorted(ranks)
    assert len(set(ranks)) == len(ranks)
    assert sum(1 for s in record.status_history if s.is_terminal) <= 1

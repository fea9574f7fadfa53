"""
Tests for exec-approval system.
"""

import asyncio
import pytest

from relay_agent.tools.base import ConfirmationDetails, ConfirmationKind
from relay_agent.tools.exec_approval import (
    ApprovalManager,
    ConfirmationOutcome,
    PendingApproval,
)


def _details(**kwargs) -> ConfirmationDetails:
    kwargs.setdefault("kind", ConfirmationKind.EXEC)
    kwargs.setdefault("title", "Confirm Shell Command")
    return ConfirmationDetails(**kwargs)


def test_needs_approval():
    """Test approval requirement checking."""
    manager = ApprovalManager(approval_required=True, always_allow=["read_file"])

    assert manager.needs_approval("run_command")
    assert not manager.needs_approval("read_file")


def test_needs_approval_disabled():
    """Test that approval can be disabled globally."""
    manager = ApprovalManager(approval_required=False)

    assert not manager.needs_approval("run_command")
    assert not manager.needs_approval("delete_file")


@pytest.mark.asyncio
async def test_create_approval_request():
    """Test creating an approval request."""
    surfaced: list[PendingApproval] = []
    manager = ApprovalManager(on_request=surfaced.append)

    approval = manager.request("c1", "run_command", {"command": "ls -la"}, _details(command="ls -la"))

    assert approval.call_id == "c1"
    assert approval.tool_name == "run_command"
    assert approval.arguments == {"command": "ls -la"}
    assert approval.is_pending
    assert surfaced == [approval]
    assert manager.get_pending("c1") is approval


@pytest.mark.asyncio
async def test_approve_request():
    """Test approving a request."""
    manager = ApprovalManager()
    approval = manager.request("c1", "run_command", {"command": "ls"}, _details())

    assert manager.approve("c1")
    assert not approval.is_pending

    decision = await manager.wait("c1")
    assert decision.outcome == ConfirmationOutcome.PROCEED_ONCE
    assert manager.get_pending("c1") is None


@pytest.mark.asyncio
async def test_approve_always_allow_lists_tool():
    """Test that proceed-always stops further confirmation for the tool."""
    manager = ApprovalManager()
    manager.request("c1", "run_command", {"command": "ls"}, _details())

    assert manager.approve("c1", always=True)

    assert not manager.needs_approval("run_command")
    assert manager.needs_approval("delete_file")


@pytest.mark.asyncio
async def test_deny_request():
    """Test denying a request."""
    manager = ApprovalManager()
    manager.request("c1", "run_command", {"command": "rm -rf test"}, _details())

    assert manager.deny("c1")

    decision = await manager.wait("c1")
    assert decision.outcome == ConfirmationOutcome.CANCEL


@pytest.mark.asyncio
async def test_modify_request_carries_args():
    """Test that an edit returns the updated arguments."""
    manager = ApprovalManager()
    manager.request("c1", "write_file", {"file_path": "a.txt"}, _details(kind=ConfirmationKind.EDIT))

    with pytest.raises(ValueError):
        manager.resolve("c1", ConfirmationOutcome.MODIFY_WITH_EDITOR)

    assert manager.modify("c1", {"file_path": "b.txt"})
    decision = await manager.wait("c1")
    assert decision.outcome == ConfirmationOutcome.MODIFY_WITH_EDITOR
    assert decision.args == {"file_path": "b.txt"}


def test_approve_nonexistent():
    """Test approving a nonexistent request."""
    manager = ApprovalManager()
    assert not manager.approve("nonexistent_id")


@pytest.mark.asyncio
async def test_list_pending():
    """Test listing pending approvals."""
    manager = ApprovalManager()

    manager.request("c1", "run_command", {"command": "ls"}, _details())
    manager.request("c2", "delete_file", {"path": "x"}, _details(kind=ConfirmationKind.EDIT))

    assert len(manager.list_pending()) == 2

    # Approve one
    manager.approve("c1")
    pending = manager.list_pending()
    assert len(pending) == 1
    assert pending[0].call_id == "c2"


@pytest.mark.asyncio
async def test_discard_cancels_waiter():
    """Test that discarding a request cancels whoever waits on it."""
    manager = ApprovalManager()
    approval = manager.request("c1", "run_command", {"command": "ls"}, _details())

    manager.discard("c1")

    assert approval.future.cancelled()
    assert manager.list_pending() == []


@pytest.mark.asyncio
async def test_pending_approval_format():
    """Test approval display formatting."""
    manager = ApprovalManager()

    approval = manager.request(
        "c1",
        "run_command",
        {"command": "ls -la /home"},
        _details(command="ls -la /home"),
    )

    display = approval.format_for_display()
    assert "Confirm Shell Command" in display
    assert "run_command" in display
    assert "ls -la /home" in display
    assert "c1" in display


@pytest.mark.asyncio
async def test_wait_for_approval_approved():
    """Test waiting for approval that gets approved."""
    manager = ApprovalManager()
    manager.request("c1", "run_command", {"command": "ls"}, _details())

    # Approve in background
    async def approve_later():
        await asyncio.sleep(0.05)
        manager.approve("c1")

    task = asyncio.create_task(approve_later())
    decision = await manager.wait("c1")
    await task

    assert decision.outcome == ConfirmationOutcome.PROCEED_ONCE


@pytest.mark.asyncio
async def test_wait_unknown_call():
    """Test that waiting on an unknown call id fails."""
    manager = ApprovalManager()

    with pytest.raises(KeyError):
        await manager.wait("missing")

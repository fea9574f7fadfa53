"""
Execution Approval System - operator approval for tool calls that ask for it.

Tools decide whether a call needs confirmation (should_confirm_execute); this
module holds those calls until the operator answers. An answer is one of:

- proceed once: run this call
- proceed always: run it and stop asking for this tool in this session
- modify: run validation again with edited arguments
- cancel: do not run it

Waiting is unbounded; the turn's cancellation token is the only way out
besides an answer.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable

import structlog

from .base import ConfirmationDetails

logger = structlog.get_logger()


class ConfirmationOutcome(str, Enum):
    """Operator answers to a confirmation request."""
    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    MODIFY_WITH_EDITOR = "modify_with_editor"
    CANCEL = "cancel"


@dataclass
class ApprovalDecision:
    outcome: ConfirmationOutcome
    args: dict[str, Any] | None = None


@dataclass
class PendingApproval:
    """A tool call waiting for operator approval."""
    call_id: str
    tool_name: str
    arguments: dict[str, Any]
    details: ConfirmationDetails
    future: asyncio.Future = field(repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_pending(self) -> bool:
        return not self.future.done()

    def format_for_display(self) -> str:
        """Format this approval request for display."""
        args_display = "\n".join(
            f"  {k}: {str(v)[:100]}" for k, v in self.arguments.items()
        )
        lines = [
            f"**{self.details.title or 'Approval Required'}**",
            "",
            f"**Tool:** `{self.tool_name}` ({self.details.kind.value})",
        ]
        if self.details.command:
            lines.append(f"**Command:** `{self.details.command}`")
        if self.details.file_name:
            lines.append(f"**File:** `{self.details.file_name}`")
        if self.details.urls:
            lines.append("**URLs:** " + ", ".join(self.details.urls))
        if self.details.prompt:
            lines.append(self.details.prompt)
        lines.extend([
            f"**Arguments:**\n```\n{args_display}\n```",
            "",
            f"Approve `{self.call_id}` once or always, edit its arguments, or cancel it.",
        ])
        return "\n".join(lines)


class ApprovalManager:
    """Manages pending tool-call approvals.

    The scheduler registers a request and awaits its decision; the operator
    side (UI, CLI, tests) lists pending requests and resolves them.
    """

    def __init__(
        self,
        approval_required: bool = True,
        always_allow: Iterable[str] = (),
        on_request: Callable[[PendingApproval], None] | None = None,
    ):
        self.approval_required = approval_required
        self._always_allow: set[str] = set(always_allow)
        self._pending: dict[str, PendingApproval] = {}
        self.on_request = on_request

    def needs_approval(self, tool_name: str) -> bool:
        """Whether confirmation should be asked for at all for this tool."""
        if not self.approval_required:
            return False
        return tool_name not in self._always_allow

    def allow_always(self, tool_name: str) -> None:
        self._always_allow.add(tool_name)

    def request(
        self,
        call_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        details: ConfirmationDetails,
    ) -> PendingApproval:
        """Register a call that needs an operator decision."""
        if call_id in self._pending and self._pending[call_id].is_pending:
            self._pending[call_id].future.cancel()

        approval = PendingApproval(
            call_id=call_id,
            tool_name=tool_name,
            arguments=dict(arguments),
            details=details,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[call_id] = approval

        logger.info(
            "Approval request created",
            call_id=call_id,
            tool=tool_name,
            kind=details.kind.value,
        )

        if self.on_request is not None:
            self.on_request(approval)

        return approval

    async def wait(self, call_id: str) -> ApprovalDecision:
        """Wait for the decision on a pending call."""
        approval = self._pending.get(call_id)
        if approval is None:
            raise KeyError(f"No approval request for call {call_id!r}")
        try:
            return await approval.future
        finally:
            self._pending.pop(call_id, None)

    def resolve(
        self,
        call_id: str,
        outcome: ConfirmationOutcome,
        args: dict[str, Any] | None = None,
    ) -> bool:
        """Answer a pending request. Returns False if nothing is pending under call_id."""
        approval = self._pending.get(call_id)
        if approval is None or not approval.is_pending:
            return False

        if outcome == ConfirmationOutcome.PROCEED_ALWAYS:
            self.allow_always(approval.tool_name)
        if outcome == ConfirmationOutcome.MODIFY_WITH_EDITOR and args is None:
            raise ValueError("modify_with_editor requires updated arguments")

        approval.future.set_result(ApprovalDecision(outcome=outcome, args=args))
        logger.info("Approval resolved", call_id=call_id, tool=approval.tool_name, outcome=outcome.value)
        return True

    def approve(self, call_id: str, always: bool = False) -> bool:
        """Approve a pending request."""
        outcome = ConfirmationOutcome.PROCEED_ALWAYS if always else ConfirmationOutcome.PROCEED_ONCE
        return self.resolve(call_id, outcome)

    def deny(self, call_id: str) -> bool:
        """Deny a pending request."""
        return self.resolve(call_id, ConfirmationOutcome.CANCEL)

    def modify(self, call_id: str, args: dict[str, Any]) -> bool:
        """Send a request back for validation with edited arguments."""
        return self.resolve(call_id, ConfirmationOutcome.MODIFY_WITH_EDITOR, args)

    def discard(self, call_id: str) -> None:
        """Drop a request whose call was cancelled."""
        approval = self._pending.pop(call_id, None)
        if approval is not None and approval.is_pending:
            approval.future.cancel()

    def get_pending(self, call_id: str) -> PendingApproval | None:
        """Get a pending approval by call id."""
        approval = self._pending.get(call_id)
        return approval if approval is not None and approval.is_pending else None

    def list_pending(self) -> list[PendingApproval]:
        """List all pending approvals."""
        return [a for a in self._pending.values() if a.is_pending]

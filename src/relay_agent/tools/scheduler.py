"""
Tool call scheduler - the lifecycle of the tool calls emitted by one turn.

Each call moves strictly forward through

    validating -> awaiting_approval -> executing -> success | error | cancelled

(awaiting_approval and executing may each be skipped). Terminal states are
absorbing. A batch is complete when every call in it is terminal; only then
are the function responses handed back for the next turn.
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

import structlog

from ..errors import (
    InvalidTransitionError,
    OperationCancelledError,
    SchedulerBusyError,
    ToolExecutionError,
)
from ..llm.base import FunctionResponse, Message, Part
from .base import ConfirmationDetails, ToolCallRequest, ToolResult, synthesize_call_id
from .checkpoint import CheckpointManager
from .exec_approval import ApprovalManager, ConfirmationOutcome
from .registry import AnyTool, ToolRegistry

if TYPE_CHECKING:
    from ..agent.cancellation import CancelToken

logger = structlog.get_logger()

CANCELLED_BY_USER = "[Operation Cancelled] Reason: User did not allow tool call"
CANCELLED_BY_TOKEN = "[Operation Cancelled] Reason: User cancelled tool execution"


class ToolCallStatus(str, Enum):
    VALIDATING = "validating"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallStatus.SUCCESS, ToolCallStatus.ERROR, ToolCallStatus.CANCELLED)


_RANK = {
    ToolCallStatus.VALIDATING: 0,
    ToolCallStatus.AWAITING_APPROVAL: 1,
    ToolCallStatus.EXECUTING: 2,
    ToolCallStatus.SUCCESS: 3,
    ToolCallStatus.ERROR: 3,
    ToolCallStatus.CANCELLED: 3,
}


@dataclass
class ToolCallRecord:
    """One tool call and where it is in its lifecycle."""

    request: ToolCallRequest
    status: ToolCallStatus = ToolCallStatus.VALIDATING
    tool: AnyTool | None = None
    confirmation: ConfirmationDetails | None = None
    outcome: ConfirmationOutcome | None = None
    result: ToolResult | None = None
    response: FunctionResponse | None = None
    error: str | None = None
    checkpoint: str | None = None
    status_history: list[ToolCallStatus] = field(default_factory=lambda: [ToolCallStatus.VALIDATING])
    started_at: float = field(default_factory=time.monotonic)
    duration_ms: int | None = None

    @property
    def call_id(self) -> str:
        return self.request.call_id

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, new_status: ToolCallStatus) -> None:
        """Move forward; a repeated awaiting_approval (after an edit) is a refresh."""
        if self.status.is_terminal:
            raise InvalidTransitionError(
                f"Tool call {self.call_id} is already {self.status.value}, cannot move to {new_status.value}"
            )
        if new_status == ToolCallStatus.AWAITING_APPROVAL and self.status == new_status:
            return
        if _RANK[new_status] <= _RANK[self.status]:
            raise InvalidTransitionError(
                f"Tool call {self.call_id} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.status_history.append(new_status)
        if new_status.is_terminal:
            self.duration_ms = int((time.monotonic() - self.started_at) * 1000)


@dataclass
class ToolBatch:
    """A completed batch of tool calls."""

    records: list[ToolCallRecord]

    @property
    def complete(self) -> bool:
        return all(r.is_terminal for r in self.records)

    @property
    def all_cancelled(self) -> bool:
        return bool(self.records) and all(r.status == ToolCallStatus.CANCELLED for r in self.records)

    @property
    def response_parts(self) -> list[Part]:
        return [Part(function_response=r.response) for r in self.records if r.response is not None]

    def to_message(self) -> Message:
        return Message(role="user", parts=self.response_parts)


def _unique_ids(requests: list[ToolCallRequest]) -> list[ToolCallRequest]:
    """Give a later call that reuses an earlier call id a fresh one."""
    seen: set[str] = set()
    unique = []
    for request in requests:
        if request.call_id in seen:
            fresh = synthesize_call_id(request.name)
            logger.warning("Duplicate tool call id", call_id=request.call_id, replacement=fresh)
            request = replace(request, call_id=fresh)
        seen.add(request.call_id)
        unique.append(request)
    return unique


class ToolCallScheduler:
    """Validates, approves and executes the tool calls of one turn."""

    def __init__(
        self,
        registry: ToolRegistry,
        approvals: ApprovalManager | None = None,
        checkpoints: CheckpointManager | None = None,
        on_update: Callable[[list[ToolCallRecord]], None] | None = None,
        history_provider: Callable[[], list[Message]] | None = None,
    ):
        self.registry = registry
        self.approvals = approvals or ApprovalManager()
        self.checkpoints = checkpoints
        self.on_update = on_update
        self.history_provider = history_provider
        self._records: list[ToolCallRecord] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def records(self) -> list[ToolCallRecord]:
        return list(self._records)

    async def schedule(self, requests: list[ToolCallRequest], token: "CancelToken") -> ToolBatch:
        """Run a batch of tool calls until every one of them is terminal."""
        if self._running:
            raise SchedulerBusyError("Cannot schedule tool calls while other tool calls are running")

        self._running = True
        try:
            self._records = [ToolCallRecord(request=r) for r in _unique_ids(requests)]
            self._notify()
            await asyncio.gather(*(self._drive(record, token) for record in self._records))
            batch = ToolBatch(records=list(self._records))
            logger.info(
                "Tool batch complete",
                calls=len(batch.records),
                statuses=[r.status.value for r in batch.records],
            )
            return batch
        finally:
            self._running = False
            self._records = []

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(list(self._records))

    def _set_status(self, record: ToolCallRecord, status: ToolCallStatus) -> None:
        record.transition(status)
        logger.debug("Tool call status", call_id=record.call_id, tool=record.request.name, status=status.value)
        self._notify()

    def _finish(self, record: ToolCallRecord, status: ToolCallStatus, response: dict[str, Any]) -> None:
        record.response = FunctionResponse(id=record.call_id, name=record.request.name, response=response)
        self._set_status(record, status)

    def _fail(self, record: ToolCallRecord, message: str) -> None:
        record.error = message
        self._finish(record, ToolCallStatus.ERROR, {"error": message})

    def _cancel(self, record: ToolCallRecord, reason: str) -> None:
        record.result = None
        self._finish(record, ToolCallStatus.CANCELLED, {"error": reason})

    async def _drive(self, record: ToolCallRecord, token: "CancelToken") -> None:
        """Run one call to a terminal state; failures stay inside the record."""
        try:
            await self._run(record, token)
        except OperationCancelledError:
            if not record.is_terminal:
                self._cancel(record, CANCELLED_BY_TOKEN)
        except Exception as e:
            logger.error("Tool call failed", call_id=record.call_id, tool=record.request.name, error=str(e))
            if not record.is_terminal:
                self._fail(record, str(e) or type(e).__name__)
        finally:
            self.approvals.discard(record.call_id)

    async def _run(self, record: ToolCallRecord, token: "CancelToken") -> None:
        name = record.request.name
        tool = self.registry.get(name)
        if tool is None:
            self._fail(record, f'Tool "{name}" not found in registry.')
            return
        record.tool = tool

        while True:
            token.raise_if_cancelled()
            details = None
            if self.approvals.needs_approval(name):
                details = await token.race(tool.should_confirm_execute(record.request.args, token))
            if not details:
                break

            record.confirmation = details
            self._set_status(record, ToolCallStatus.AWAITING_APPROVAL)
            self.approvals.request(record.call_id, name, record.request.args, details)
            decision = await token.race(self.approvals.wait(record.call_id))
            record.outcome = decision.outcome

            if decision.outcome == ConfirmationOutcome.CANCEL:
                self._cancel(record, CANCELLED_BY_USER)
                return
            if decision.outcome == ConfirmationOutcome.MODIFY_WITH_EDITOR:
                record.request = replace(record.request, args=dict(decision.args or {}))
                logger.info("Tool call arguments edited", call_id=record.call_id, tool=name)
                continue
            break

        if tool.restorable and self.checkpoints is not None:
            if not await self._checkpoint(record, tool, token):
                return

        self._set_status(record, ToolCallStatus.EXECUTING)
        try:
            result = await token.race(tool.execute(record.request.args, token))
        except OperationCancelledError:
            self._cancel(record, CANCELLED_BY_TOKEN)
            return
        except Exception as e:
            error = ToolExecutionError(name, str(e) or type(e).__name__, e)
            logger.error("Tool execution error", tool_name=name, call_id=record.call_id, error=error.message)
            self._fail(record, error.message)
            return

        record.result = result
        if result.success:
            self._finish(record, ToolCallStatus.SUCCESS, {"output": result.output})
        else:
            record.error = result.error or "Tool execution failed"
            self._finish(record, ToolCallStatus.ERROR, {"error": record.error})

    async def _checkpoint(self, record: ToolCallRecord, tool: AnyTool, token: "CancelToken") -> bool:
        files = tool.affected_files(record.request.args)
        history = self.history_provider() if self.history_provider else []
        try:
            path = await token.race(self.checkpoints.create(  # type: ignore[union-attr]
                record.request,
                files[0] if files else None,
                history,
                [{"role": m.role, "text": m.text} for m in history if m.text],
            ))
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.error("Checkpoint failed", tool=record.request.name, call_id=record.call_id, error=str(e))
            self._fail(record, f"Could not create checkpoint: {e}")
            return False
        record.checkpoint = str(path)
        return True

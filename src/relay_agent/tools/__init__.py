"""
Tools module - tool contract, registry, approvals and the call scheduler.
"""

from .base import (
    BaseTool,
    ConfirmationDetails,
    ConfirmationKind,
    Tool,
    ToolCallRequest,
    ToolParameter,
    ToolResult,
)
from .registry import ToolRegistry
from .exec_approval import ApprovalDecision, ApprovalManager, ConfirmationOutcome, PendingApproval
from .checkpoint import CheckpointManager, CheckpointRecord, GitSnapshotService, SnapshotService
from .scheduler import ToolBatch, ToolCallRecord, ToolCallScheduler, ToolCallStatus

__all__ = [
    "BaseTool",
    "ConfirmationDetails",
    "ConfirmationKind",
    "Tool",
    "ToolCallRequest",
    "ToolParameter",
    "ToolResult",
    "ToolRegistry",
    "ApprovalDecision",
    "ApprovalManager",
    "ConfirmationOutcome",
    "PendingApproval",
    "CheckpointManager",
    "CheckpointRecord",
    "GitSnapshotService",
    "SnapshotService",
    "ToolBatch",
    "ToolCallRecord",
    "ToolCallScheduler",
    "ToolCallStatus",
]

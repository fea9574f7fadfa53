"""
Agent module - the brain of the system.

Includes:
- Agent: the model/tool loop
- ChatSession: ordered, curated conversation history
- Turn: one model exchange as a stream of events
- ChatCompressor: summary-based context compression
- RetryController: backoff and model fallback
- CancelToken: per-turn cancellation
"""

from .cancellation import CancelToken
from .chat import ChatSession, extract_curated_history
from .compaction import ChatCompressor, CompressionInfo
from .core import Agent
from .diagnostics import ErrorReporter
from .events import (
    ChatCompressedEvent,
    ContentEvent,
    ErrorEvent,
    EventType,
    StreamEvent,
    ThoughtEvent,
    ToolCallRequestEvent,
    UsageMetadataEvent,
    UserCancelledEvent,
)
from .retry import RetryController, RetryPolicy
from .turn import Turn

__all__ = [
    "Agent",
    "CancelToken",
    "ChatSession",
    "extract_curated_history",
    "ChatCompressor",
    "CompressionInfo",
    "ErrorReporter",
    "ChatCompressedEvent",
    "ContentEvent",
    "ErrorEvent",
    "EventType",
    "StreamEvent",
    "ThoughtEvent",
    "ToolCallRequestEvent",
    "UsageMetadataEvent",
    "UserCancelledEvent",
    "RetryController",
    "RetryPolicy",
    "Turn",
]

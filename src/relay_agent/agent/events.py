"""
Stream events emitted by the turn engine and agent loop.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Union

from ..errors import StructuredError
from ..llm.base import UsageMetadata

if TYPE_CHECKING:
    from ..tools.base import ToolCallRequest
    from .compaction import CompressionInfo


class EventType(str, Enum):
    CONTENT = "content"
    THOUGHT = "thought"
    TOOL_CALL_REQUEST = "tool_call_request"
    USAGE_METADATA = "usage_metadata"
    CHAT_COMPRESSED = "chat_compressed"
    USER_CANCELLED = "user_cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class ContentEvent:
    text: str
    type: EventType = EventType.CONTENT


@dataclass(frozen=True)
class ThoughtEvent:
    subject: str
    description: str
    type: EventType = EventType.THOUGHT


@dataclass(frozen=True)
class ToolCallRequestEvent:
    request: "ToolCallRequest"
    type: EventType = EventType.TOOL_CALL_REQUEST


@dataclass(frozen=True)
class UsageMetadataEvent:
    usage: UsageMetadata
    duration_ms: int | None = None
    type: EventType = EventType.USAGE_METADATA


@dataclass(frozen=True)
class ChatCompressedEvent:
    info: "CompressionInfo"
    type: EventType = EventType.CHAT_COMPRESSED


@dataclass(frozen=True)
class UserCancelledEvent:
    type: EventType = EventType.USER_CANCELLED


@dataclass(frozen=True)
class ErrorEvent:
    error: StructuredError
    type: EventType = EventType.ERROR


StreamEvent = Union[
    ContentEvent,
    ThoughtEvent,
    ToolCallRequestEvent,
    UsageMetadataEvent,
    ChatCompressedEvent,
    UserCancelledEvent,
    ErrorEvent,
]

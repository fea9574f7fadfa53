"""
Turn engine - one exchange with the model, as a stream of events.
"""

import re
import time
from contextlib import aclosing
from typing import AsyncIterator

import structlog

from ..errors import AuthenticationError, OperationCancelledError, StructuredError
from ..llm.base import FunctionCall, GenerateConfig, LLMResponse, Message, Part, UsageMetadata
from ..tools.base import ToolCallRequest, synthesize_call_id
from .cancellation import CancelToken
from .chat import ChatSession, as_message
from .diagnostics import ErrorReporter
from .events import (
    ContentEvent,
    ErrorEvent,
    StreamEvent,
    ThoughtEvent,
    ToolCallRequestEvent,
    UsageMetadataEvent,
    UserCancelledEvent,
)

logger = structlog.get_logger()

UNDEFINED_TOOL_NAME = "undefined_tool_name"

_SUBJECT = re.compile(r"\*\*(.*?)\*\*", re.DOTALL)


def parse_thought(text: str) -> tuple[str, str]:
    """Split a thought into its bold subject and the remaining description."""
    match = _SUBJECT.search(text)
    if not match:
        return "", text.strip()
    subject = match.group(1).strip()
    description = (text[: match.start()] + text[match.end():]).strip()
    return subject, description


class Turn:
    """Drives one request/response exchange and normalizes it into events."""

    def __init__(self, chat: ChatSession, reporter: ErrorReporter | None = None):
        self.chat = chat
        self.reporter = reporter or ErrorReporter()
        self.pending_tool_calls: list[ToolCallRequest] = []
        self._seen_call_ids: set[str] = set()
        self.finish_reason: str | None = None

    async def run(
        self,
        message: Message | str | list[Part],
        token: CancelToken,
        config: GenerateConfig | None = None,
    ) -> AsyncIterator[StreamEvent]:
        request = as_message(message)
        started = time.monotonic()
        usage: UsageMetadata | None = None

        try:
            async with aclosing(self.chat.send_stream(request, config, token)) as stream:
                async for chunk in stream:
                    if token.cancelled:
                        yield UserCancelledEvent()
                        return

                    for event in self._handle_chunk(chunk):
                        yield event
                    if chunk.usage is not None:
                        usage = chunk.usage
                    if chunk.finish_reason:
                        self.finish_reason = chunk.finish_reason

            if token.cancelled:
                yield UserCancelledEvent()
                return

            if usage is not None:
                duration_ms = int((time.monotonic() - started) * 1000)
                yield UsageMetadataEvent(usage=usage, duration_ms=duration_ms)

        except AuthenticationError:
            raise
        except OperationCancelledError:
            yield UserCancelledEvent()
        except Exception as e:
            if token.cancelled:
                yield UserCancelledEvent()
                return
            context = self.chat.get_history(curated=True) + [request]
            self.reporter.report(e, "Error when talking to model API", context, "Turn.run-sendMessageStream")
            yield ErrorEvent(error=StructuredError.from_exception(e))

    def _handle_chunk(self, chunk: LLMResponse) -> list[StreamEvent]:
        if chunk.parts and chunk.parts[0].thought:
            subject, description = parse_thought(chunk.parts[0].text or "")
            return [ThoughtEvent(subject=subject, description=description)]

        events: list[StreamEvent] = []
        if chunk.text:
            events.append(ContentEvent(text=chunk.text))
        for call in chunk.function_calls:
            events.append(self._handle_function_call(call))
        return events

    def _handle_function_call(self, call: FunctionCall) -> ToolCallRequestEvent:
        name = call.name or UNDEFINED_TOOL_NAME
        if not call.id or call.id in self._seen_call_ids:
            # Written back so the recorded model message carries the same id.
            call.id = synthesize_call_id(name)
        self._seen_call_ids.add(call.id)
        request = ToolCallRequest(
            call_id=call.id,
            name=name,
            args=dict(call.args or {}),
            client_initiated=False,
        )
        self.pending_tool_calls.append(request)
        logger.debug("Tool call requested", tool=name, call_id=request.call_id)
        return ToolCallRequestEvent(request=request)

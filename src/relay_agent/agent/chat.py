"""
Chat session - the owner of conversation history.

History is append-only and only mutated here. Sends are serialized so that
history order equals call order, the user message is recorded once the
backend accepts the request, and the model's output once the exchange
completes.
"""

import asyncio
import copy
from typing import AsyncIterator

import structlog

from ..llm.base import (
    VALID_ROLES,
    BaseLLM,
    GenerateConfig,
    LLMResponse,
    Message,
    Part,
)
from .cancellation import CancelToken
from .retry import RetryController

logger = structlog.get_logger()


def validate_history(history: list[Message]) -> None:
    for message in history:
        if message.role not in VALID_ROLES:
            raise ValueError(f"Role must be user or model, but got {message.role!r}")


def extract_curated_history(history: list[Message]) -> list[Message]:
    """Drop every run of model messages that contains a malformed message.

    User messages are always kept, so a dropped run leaves the preceding user
    message in place.
    """
    curated: list[Message] = []
    i = 0
    while i < len(history):
        if history[i].role == "user":
            curated.append(history[i])
            i += 1
            continue

        run: list[Message] = []
        valid = True
        while i < len(history) and history[i].role == "model":
            run.append(history[i])
            valid = valid and history[i].is_valid()
            i += 1
        if valid:
            curated.extend(run)
    return curated


def as_message(message: Message | str | list[Part]) -> Message:
    if isinstance(message, Message):
        return message
    if isinstance(message, str):
        return Message.user(message)
    return Message(role="user", parts=list(message))


def _strip_thoughts(message: Message) -> Message:
    return Message(role=message.role, parts=[p for p in message.parts if not p.thought])


def consolidate_output(outputs: list[Message]) -> list[Message]:
    """Merge streamed model fragments into one message, joining adjacent text parts."""
    parts: list[Part] = []
    for message in outputs:
        for part in message.parts:
            last = parts[-1] if parts else None
            if (
                last is not None
                and part.text is not None
                and last.text is not None
                and not last.thought
                and not part.thought
                and last.function_call is None
                and part.function_call is None
            ):
                parts[-1] = Part(text=last.text + part.text)
            else:
                parts.append(copy.deepcopy(part))
    return [Message(role="model", parts=parts)] if parts else []


class ChatSession:
    """Conversation history plus the send pipeline."""

    def __init__(
        self,
        llm: BaseLLM,
        retry: RetryController | None = None,
        config: GenerateConfig | None = None,
        history: list[Message] | None = None,
    ):
        history = list(history or [])
        validate_history(history)
        self.llm = llm
        self.retry = retry or RetryController(llm.model)
        self.config = config or GenerateConfig()
        self._history: list[Message] = copy.deepcopy(history)
        self._send_lock = asyncio.Lock()

    @property
    def model(self) -> str:
        return self.retry.model

    def get_history(self, curated: bool = False) -> list[Message]:
        """Return a copy of the history, optionally curated."""
        history = extract_curated_history(self._history) if curated else self._history
        return copy.deepcopy(history)

    def add_history(self, message: Message) -> None:
        validate_history([message])
        self._history.append(copy.deepcopy(message))

    def set_history(self, history: list[Message]) -> None:
        validate_history(history)
        self._history = copy.deepcopy(history)

    def clear_history(self) -> None:
        self._history = []

    def _request_contents(self, request: Message) -> list[Message]:
        return extract_curated_history(self._history) + [request]

    async def send(
        self,
        message: Message | str | list[Part],
        config: GenerateConfig | None = None,
    ) -> LLMResponse:
        """Send a message and wait for the complete response."""
        async with self._send_lock:
            request = as_message(message)
            contents = self._request_contents(request)
            cfg = self.config.merged(config)

            logger.debug("API request", model=self.model, messages=len(contents))
            try:
                response = await self.retry.run(
                    lambda model: self.llm.generate(contents, cfg, model=model)
                )
            except Exception as e:
                logger.error("API error", model=self.model, error=str(e))
                raise

            logger.debug("API response", model=self.model, finish_reason=response.finish_reason)
            self._history.append(copy.deepcopy(request))
            output = response.to_message()
            self._record_output(request, [output] if output.is_valid() else [])
            return response

    async def send_stream(
        self,
        message: Message | str | list[Part],
        config: GenerateConfig | None = None,
        token: CancelToken | None = None,
    ) -> AsyncIterator[LLMResponse]:
        """Send a message and yield response chunks as they arrive.

        Nothing from the model is recorded if the stream fails or the token
        trips before it finishes.
        """
        async with self._send_lock:
            request = as_message(message)
            contents = self._request_contents(request)
            cfg = self.config.merged(config)

            logger.debug("API request", model=self.model, messages=len(contents), stream=True)

            async def open_stream(model: str) -> AsyncIterator[LLMResponse]:
                return await self.llm.generate_stream(contents, cfg, model=model)

            try:
                opening = self.retry.run(open_stream)
                stream = await token.race(opening) if token else await opening
            except Exception as e:
                logger.error("API error", model=self.model, error=str(e))
                raise

            self._history.append(copy.deepcopy(request))

            outputs: list[Message] = []
            completed = False
            iterator = stream.__aiter__()
            try:
                while True:
                    try:
                        if token:
                            chunk = await token.race(iterator.__anext__())
                        else:
                            chunk = await iterator.__anext__()
                    except StopAsyncIteration:
                        break
                    candidate = chunk.to_message()
                    if chunk.parts and candidate.is_valid():
                        outputs.append(candidate)
                    yield chunk
                completed = True
            finally:
                aclose = getattr(iterator, "aclose", None)
                if aclose is not None:
                    await aclose()

            if completed and not (token and token.cancelled):
                self._record_output(request, outputs)
            else:
                logger.info("Stream abandoned, model output not recorded", model=self.model)

    def _record_output(self, request: Message, outputs: list[Message]) -> None:
        visible = [m for m in (_strip_thoughts(o) for o in outputs) if m.parts]
        if visible:
            self._history.extend(consolidate_output(visible))
        elif not outputs and not request.is_function_response():
            # Placeholder keeps the user/model pairing; curation removes it.
            self._history.append(Message(role="model", parts=[]))

"""
Shared fixtures: a scripted backend that replays canned responses.
"""

from typing import AsyncIterator

import pytest

from relay_agent.agent.retry import RetryController, RetryPolicy
from relay_agent.llm.base import (
    BaseLLM,
    FunctionCall,
    GenerateConfig,
    LLMResponse,
    Message,
    Part,
    ProviderCapabilities,
    UsageMetadata,
)


def text_chunk(text: str) -> LLMResponse:
    return LLMResponse(parts=[Part(text=text)])


def thought_chunk(text: str) -> LLMResponse:
    return LLMResponse(parts=[Part(text=text, thought=True)])


def call_chunk(name: str, args: dict | None = None, call_id: str | None = None) -> LLMResponse:
    return LLMResponse(parts=[Part(function_call=FunctionCall(name=name, args=args or {}, id=call_id))])


def usage_chunk(prompt: int = 10, output: int = 5) -> LLMResponse:
    return LLMResponse(
        usage=UsageMetadata(prompt_token_count=prompt, candidates_token_count=output, total_token_count=prompt + output),
        finish_reason="stop",
    )


class ScriptedLLM(BaseLLM):
    """Backend double. Each script entry is a list of chunks or an exception to raise.

    An exception placed inside a chunk list is raised mid-stream.
    """

    def __init__(self, script=None, model: str = "fake-model", function_calling: bool = True, token_count=None):
        super().__init__(api_key="test", model=model)
        self.script = list(script or [])
        self.function_calling = function_calling
        self.token_count = token_count
        self.requests: list[dict] = []
        self.closed = False

    @property
    def provider_name(self) -> str:
        return "scripted"

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(supports_function_calling=self.function_calling)

    def _next(self, messages, config, model):
        self.requests.append({"messages": list(messages), "config": config, "model": model})
        if not self.script:
            raise AssertionError("ScriptedLLM ran out of responses")
        entry = self.script.pop(0)
        if isinstance(entry, BaseException):
            raise entry
        return entry

    async def generate(
        self,
        messages: list[Message],
        config: GenerateConfig | None = None,
        model: str | None = None,
    ) -> LLMResponse:
        chunks = self._next(messages, config, model)
        parts = [p for c in chunks if isinstance(c, LLMResponse) for p in c.parts]
        return LLMResponse(parts=parts, model=model or self.model, finish_reason="stop")

    async def generate_stream(
        self,
        messages: list[Message],
        config: GenerateConfig | None = None,
        model: str | None = None,
    ) -> AsyncIterator[LLMResponse]:
        chunks = self._next(messages, config, model)

        async def iterate():
            for chunk in chunks:
                if isinstance(chunk, BaseException):
                    raise chunk
                yield chunk

        return iterate()

    async def count_tokens(self, messages: list[Message], model: str | None = None) -> int | None:
        if self.token_count is not None:
            return self.token_count
        return await super().count_tokens(messages, model)

    async def aclose(self) -> None:
        self.closed = True


async def no_sleep(delay: float) -> None:
    return None


def fast_retry(model: str = "fake-model", **kwargs) -> RetryController:
    kwargs.setdefault("policy", RetryPolicy(max_attempts=3, initial_delay_s=0.0, max_delay_s=0.0))
    kwargs.setdefault("sleep", no_sleep)
    return RetryController(model, **kwargs)


@pytest.fixture
def scripted_llm():
    return ScriptedLLM()

"""
OpenAI chat-completions backend (also works with OpenRouter and compatible APIs).
"""

import json
from typing import Any, AsyncIterator

import openai
import structlog

from ..errors import PermanentBackendError, wrap_provider_error
from .base import (
    BaseLLM,
    DeltaNormalizer,
    FunctionCall,
    GenerateConfig,
    LLMResponse,
    Message,
    Part,
    ProviderCapabilities,
    ToolDefinition,
    UsageMetadata,
)
from .tokens import token_limit

logger = structlog.get_logger()


def _parse_arguments(raw: str | None, tool_name: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        args = json.loads(raw)
    except json.JSONDecodeError as e:
        raise PermanentBackendError(
            f"Malformed arguments for tool call '{tool_name}': {e}", provider="openai"
        ) from e
    return args if isinstance(args, dict) else {"value": args}


class OpenAILLM(BaseLLM):
    """OpenAI GPT backend."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        top_p: float | None = None,
        timeout_s: float = 120.0,
        provider: str = "openai",
        delta_mode: str = "incremental",
        **kwargs: Any,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature, top_p, timeout_s, **kwargs)
        self._provider = provider
        self.delta_mode = delta_mode
        self.client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout_s,
            max_retries=0,
        )

    @property
    def provider_name(self) -> str:
        return self._provider

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_streaming=True,
            supports_vision=True,
            supports_function_calling=True,
            supports_system_prompts=True,
            max_context_length=token_limit(self.model),
        )

    def _convert_messages(
        self, messages: list[Message], system_prompt: str | None = None
    ) -> list[dict[str, Any]]:
        """Convert Messages to OpenAI format."""
        converted: list[dict[str, Any]] = []
        if system_prompt:
            converted.append({"role": "system", "content": system_prompt})

        for msg in messages:
            if msg.role == "model":
                entry: dict[str, Any] = {"role": "assistant", "content": msg.text or None}
                calls = msg.function_calls
                if calls:
                    entry["tool_calls"] = [
                        {
                            "id": fc.id,
                            "type": "function",
                            "function": {"name": fc.name, "arguments": json.dumps(fc.args)},
                        }
                        for fc in calls
                    ]
                converted.append(entry)
                continue

            for fr in msg.function_responses:
                converted.append({
                    "role": "tool",
                    "tool_call_id": fr.id,
                    "content": json.dumps(fr.response, default=str),
                })
            if msg.text:
                converted.append({"role": "user", "content": msg.text})

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to OpenAI format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in tools
        ]

    def _build_kwargs(
        self, messages: list[Message], config: GenerateConfig | None, model: str | None
    ) -> dict[str, Any]:
        cfg = self._resolve(config)
        kwargs: dict[str, Any] = {
            "model": model or self.model,
            "max_tokens": cfg.max_tokens,
            "temperature": cfg.temperature,
            "messages": self._convert_messages(messages, cfg.system_prompt),
        }
        if cfg.top_p is not None:
            kwargs["top_p"] = cfg.top_p
        if cfg.tools:
            kwargs["tools"] = self._convert_tools(cfg.tools)
        return kwargs

    async def generate(
        self,
        messages: list[Message],
        config: GenerateConfig | None = None,
        model: str | None = None,
    ) -> LLMResponse:
        """Generate a response from GPT."""
        kwargs = self._build_kwargs(messages, config, model)

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            logger.error("OpenAI API error", provider=self.provider_name, error=str(e))
            raise wrap_provider_error(e, self.provider_name) from e

        if not response.choices:
            raise PermanentBackendError("Response contained no choices", provider=self.provider_name)

        choice = response.choices[0]
        message = choice.message
        parts: list[Part] = []

        reasoning = getattr(message, "reasoning_content", None)
        if reasoning:
            parts.append(Part(text=reasoning, thought=True))
        if message.content:
            parts.append(Part(text=message.content))
        for tc in message.tool_calls or []:
            parts.append(Part(function_call=FunctionCall(
                name=tc.function.name,
                args=_parse_arguments(tc.function.arguments, tc.function.name),
                id=tc.id,
            )))

        usage = None
        if response.usage:
            usage = UsageMetadata(
                prompt_token_count=response.usage.prompt_tokens,
                candidates_token_count=response.usage.completion_tokens,
                total_token_count=response.usage.total_tokens,
            )

        return LLMResponse(
            parts=parts,
            usage=usage,
            model=response.model,
            finish_reason=choice.finish_reason,
            raw_response=response,
        )

    async def generate_stream(
        self,
        messages: list[Message],
        config: GenerateConfig | None = None,
        model: str | None = None,
    ) -> AsyncIterator[LLMResponse]:
        """Open a streaming request to GPT."""
        kwargs = self._build_kwargs(messages, config, model)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        try:
            stream = await self.client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            logger.error("OpenAI streaming error", provider=self.provider_name, error=str(e))
            raise wrap_provider_error(e, self.provider_name) from e

        return self._iter_stream(stream, kwargs["model"])

    async def _iter_stream(self, stream: Any, model: str) -> AsyncIterator[LLMResponse]:
        normalizer = DeltaNormalizer(self.delta_mode)
        # index -> {"id", "name", "arguments"}
        pending_calls: dict[int, dict[str, str]] = {}
        finish_reason: str | None = None
        usage: UsageMetadata | None = None

        try:
            async for chunk in stream:
                if chunk.usage:
                    usage = UsageMetadata(
                        prompt_token_count=chunk.usage.prompt_tokens,
                        candidates_token_count=chunk.usage.completion_tokens,
                        total_token_count=chunk.usage.total_tokens,
                    )
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta
                finish_reason = choice.finish_reason or finish_reason

                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    yield LLMResponse(parts=[Part(text=reasoning, thought=True)], model=model)

                if delta.content:
                    text = normalizer.feed(delta.content)
                    if text:
                        yield LLMResponse(parts=[Part(text=text)], model=model)

                for tc in delta.tool_calls or []:
                    slot = pending_calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    if tc.function and tc.function.name:
                        slot["name"] += tc.function.name
                    if tc.function and tc.function.arguments:
                        slot["arguments"] += tc.function.arguments
        except openai.APIError as e:
            logger.error("OpenAI streaming error", provider=self.provider_name, error=str(e))
            raise wrap_provider_error(e, self.provider_name) from e
        finally:
            await stream.close()

        call_parts = [
            Part(function_call=FunctionCall(
                name=slot["name"],
                args=_parse_arguments(slot["arguments"], slot["name"]),
                id=slot["id"] or None,
            ))
            for _, slot in sorted(pending_calls.items())
        ]
        if call_parts or usage or finish_reason:
            yield LLMResponse(parts=call_parts, usage=usage, model=model, finish_reason=finish_reason)

    async def aclose(self) -> None:
        await self.client.close()

"""
Anthropic Claude backend.
"""

import json
from typing import Any, AsyncIterator

import anthropic
import structlog

from ..errors import wrap_provider_error
from .base import (
    BaseLLM,
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


def _usage(raw: Any) -> UsageMetadata:
    input_tokens = getattr(raw, "input_tokens", 0) or 0
    output_tokens = getattr(raw, "output_tokens", 0) or 0
    return UsageMetadata(
        prompt_token_count=input_tokens,
        candidates_token_count=output_tokens,
        total_token_count=input_tokens + output_tokens,
    )


class AnthropicLLM(BaseLLM):
    """Anthropic Claude backend."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        top_p: float | None = None,
        timeout_s: float = 120.0,
        **kwargs: Any,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature, top_p, timeout_s, **kwargs)
        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout_s,
            max_retries=0,
        )

    @property
    def provider_name(self) -> str:
        return "anthropic"

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_streaming=True,
            supports_vision=True,
            supports_function_calling=True,
            supports_system_prompts=True,
            max_context_length=token_limit(self.model),
        )

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert Messages to Anthropic format."""
        converted = []

        for msg in messages:
            content: list[dict[str, Any]] = []
            for part in msg.parts:
                if part.thought:
                    continue
                if part.function_call is not None:
                    fc = part.function_call
                    content.append({"type": "tool_use", "id": fc.id, "name": fc.name, "input": fc.args})
                elif part.function_response is not None:
                    fr = part.function_response
                    content.append({
                        "type": "tool_result",
                        "tool_use_id": fr.id,
                        "content": json.dumps(fr.response, default=str),
                        "is_error": "error" in fr.response,
                    })
                elif part.text:
                    content.append({"type": "text", "text": part.text})

            if content:
                role = "assistant" if msg.role == "model" else "user"
                converted.append({"role": role, "content": content})

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to Anthropic format."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters,
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
            "messages": self._convert_messages(messages),
        }
        if cfg.top_p is not None:
            kwargs["top_p"] = cfg.top_p
        if cfg.system_prompt:
            kwargs["system"] = cfg.system_prompt
        if cfg.tools:
            kwargs["tools"] = self._convert_tools(cfg.tools)
        return kwargs

    async def generate(
        self,
        messages: list[Message],
        config: GenerateConfig | None = None,
        model: str | None = None,
    ) -> LLMResponse:
        """Generate a response from Claude."""
        kwargs = self._build_kwargs(messages, config, model)

        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.APIError as e:
            logger.error("Anthropic API error", error=str(e))
            raise wrap_provider_error(e, self.provider_name) from e

        parts: list[Part] = []
        for block in response.content:
            if block.type == "text":
                parts.append(Part(text=block.text))
            elif block.type == "thinking":
                parts.append(Part(text=block.thinking, thought=True))
            elif block.type == "tool_use":
                parts.append(Part(function_call=FunctionCall(
                    name=block.name,
                    args=dict(block.input) if isinstance(block.input, dict) else {},
                    id=block.id,
                )))

        return LLMResponse(
            parts=parts,
            usage=_usage(response.usage),
            model=response.model,
            finish_reason=response.stop_reason,
            raw_response=response,
        )

    async def generate_stream(
        self,
        messages: list[Message],
        config: GenerateConfig | None = None,
        model: str | None = None,
    ) -> AsyncIterator[LLMResponse]:
        """Open a streaming request to Claude."""
        kwargs = self._build_kwargs(messages, config, model)
        manager = self.client.messages.stream(**kwargs)

        try:
            stream = await manager.__aenter__()
        except anthropic.APIError as e:
            logger.error("Anthropic streaming error", error=str(e))
            raise wrap_provider_error(e, self.provider_name) from e

        return self._iter_stream(manager, stream, kwargs["model"])

    async def _iter_stream(self, manager: Any, stream: Any, model: str) -> AsyncIterator[LLMResponse]:
        try:
            async for event in stream:
                if event.type == "text":
                    if event.text:
                        yield LLMResponse(parts=[Part(text=event.text)], model=model)
                elif event.type == "thinking":
                    yield LLMResponse(parts=[Part(text=event.thinking, thought=True)], model=model)
                elif event.type == "content_block_stop":
                    block = event.content_block
                    if block.type == "tool_use":
                        yield LLMResponse(
                            parts=[Part(function_call=FunctionCall(
                                name=block.name,
                                args=dict(block.input) if isinstance(block.input, dict) else {},
                                id=block.id,
                            ))],
                            model=model,
                        )
                elif event.type == "message_stop":
                    yield LLMResponse(
                        usage=_usage(event.message.usage),
                        model=model,
                        finish_reason=event.message.stop_reason,
                    )
        except anthropic.APIError as e:
            logger.error("Anthropic streaming error", error=str(e))
            raise wrap_provider_error(e, self.provider_name) from e
        finally:
            await manager.__aexit__(None, None, None)

    async def aclose(self) -> None:
        await self.client.close()

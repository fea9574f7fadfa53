"""
Native Google Gemini backend.

Uses the google-generativeai SDK directly. Gemini already speaks the
user/model role and parts vocabulary, so conversion is mostly a rename;
its function calls carry no ids, which the turn engine synthesizes.
"""

import copy
from typing import Any, AsyncIterator

import google.generativeai as genai
import structlog
from google.api_core import exceptions as google_exceptions

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


def _to_plain(value: Any) -> Any:
    """Convert proto map/repeated composites into plain dicts and lists."""
    if hasattr(value, "items"):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)) or type(value).__name__ == "RepeatedComposite":
        return [_to_plain(v) for v in value]
    return value


class GoogleGeminiLLM(BaseLLM):
    """Native Google Gemini backend."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        top_p: float | None = None,
        timeout_s: float = 120.0,
        **kwargs: Any,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature, top_p, timeout_s, **kwargs)
        genai.configure(api_key=api_key)

    @property
    def provider_name(self) -> str:
        return "gemini"

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
        """Convert Messages to Gemini contents."""
        converted = []

        for msg in messages:
            parts: list[dict[str, Any]] = []
            for part in msg.parts:
                if part.thought:
                    continue
                if part.function_call is not None:
                    parts.append({
                        "function_call": {"name": part.function_call.name, "args": part.function_call.args}
                    })
                elif part.function_response is not None:
                    parts.append({
                        "function_response": {
                            "name": part.function_response.name,
                            "response": part.function_response.response,
                        }
                    })
                elif part.text:
                    parts.append({"text": part.text})
            if parts:
                converted.append({"role": msg.role, "parts": parts})

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to Gemini function declarations."""
        function_declarations = []

        for tool in tools:
            params = copy.deepcopy(tool.parameters)
            # Gemini rejects empty object schemas
            if params.get("type") == "object" and not params.get("properties"):
                params = None
            function_declarations.append({
                "name": tool.name,
                "description": tool.description,
                **({"parameters": params} if params else {}),
            })

        return [{"function_declarations": function_declarations}]

    def _model(self, cfg: GenerateConfig, model: str | None) -> Any:
        generation_config: dict[str, Any] = {
            "max_output_tokens": cfg.max_tokens,
            "temperature": cfg.temperature,
        }
        if cfg.top_p is not None:
            generation_config["top_p"] = cfg.top_p

        model_kwargs: dict[str, Any] = {
            "model_name": model or self.model,
            "generation_config": generation_config,
        }
        if cfg.system_prompt:
            model_kwargs["system_instruction"] = cfg.system_prompt

        return genai.GenerativeModel(**model_kwargs)

    def _convert_response(self, response: Any, model: str) -> LLMResponse:
        parts: list[Part] = []
        finish_reason = None

        if response.candidates:
            candidate = response.candidates[0]
            if candidate.finish_reason:
                finish_reason = getattr(candidate.finish_reason, "name", str(candidate.finish_reason))
            for part in candidate.content.parts:
                fc = getattr(part, "function_call", None)
                if fc and fc.name:
                    parts.append(Part(function_call=FunctionCall(
                        name=fc.name,
                        args=_to_plain(fc.args) if fc.args else {},
                    )))
                elif getattr(part, "text", ""):
                    parts.append(Part(text=part.text, thought=bool(getattr(part, "thought", False))))

        usage = None
        meta = getattr(response, "usage_metadata", None)
        if meta:
            usage = UsageMetadata(
                prompt_token_count=getattr(meta, "prompt_token_count", 0) or 0,
                candidates_token_count=getattr(meta, "candidates_token_count", 0) or 0,
                total_token_count=getattr(meta, "total_token_count", 0) or 0,
            )

        return LLMResponse(
            parts=parts,
            usage=usage,
            model=model,
            finish_reason=finish_reason,
            raw_response=response,
        )

    async def generate(
        self,
        messages: list[Message],
        config: GenerateConfig | None = None,
        model: str | None = None,
    ) -> LLMResponse:
        """Generate a response from Gemini."""
        cfg = self._resolve(config)
        generate_kwargs: dict[str, Any] = {"contents": self._convert_messages(messages)}
        if cfg.tools:
            generate_kwargs["tools"] = self._convert_tools(cfg.tools)

        try:
            response = await self._model(cfg, model).generate_content_async(**generate_kwargs)
        except google_exceptions.GoogleAPICallError as e:
            logger.error("Gemini API error", error=str(e))
            raise wrap_provider_error(e, self.provider_name) from e

        return self._convert_response(response, model or self.model)

    async def generate_stream(
        self,
        messages: list[Message],
        config: GenerateConfig | None = None,
        model: str | None = None,
    ) -> AsyncIterator[LLMResponse]:
        """Open a streaming request to Gemini."""
        cfg = self._resolve(config)
        generate_kwargs: dict[str, Any] = {
            "contents": self._convert_messages(messages),
            "stream": True,
        }
        if cfg.tools:
            generate_kwargs["tools"] = self._convert_tools(cfg.tools)

        try:
            response = await self._model(cfg, model).generate_content_async(**generate_kwargs)
        except google_exceptions.GoogleAPICallError as e:
            logger.error("Gemini streaming error", error=str(e))
            raise wrap_provider_error(e, self.provider_name) from e

        return self._iter_stream(response, model or self.model)

    async def _iter_stream(self, response: Any, model: str) -> AsyncIterator[LLMResponse]:
        try:
            async for chunk in response:
                yield self._convert_response(chunk, model)
        except google_exceptions.GoogleAPICallError as e:
            logger.error("Gemini streaming error", error=str(e))
            raise wrap_provider_error(e, self.provider_name) from e

    async def count_tokens(self, messages: list[Message], model: str | None = None) -> int | None:
        """Count prompt tokens with the Gemini tokenizer endpoint."""
        contents = self._convert_messages(messages)
        if not contents:
            return 0
        try:
            result = await genai.GenerativeModel(model or self.model).count_tokens_async(contents)
        except google_exceptions.GoogleAPICallError as e:
            logger.warning("Gemini token count failed", error=str(e))
            raise wrap_provider_error(e, self.provider_name) from e
        return result.total_tokens

"""
Ollama backend for locally served models.

Talks to the Ollama HTTP API (`/api/chat`, NDJSON streaming) with httpx.
Local models are treated as lacking native tool calling, so file-creation
answers are turned into write_file calls by the configured intent extractor.
"""

import json
from typing import Any, AsyncIterator

import httpx
import structlog

from ..errors import PermanentBackendError, wrap_provider_error
from .base import (
    BaseLLM,
    DeltaNormalizer,
    GenerateConfig,
    LLMResponse,
    Message,
    Part,
    ProviderCapabilities,
    UsageMetadata,
)
from .intent import FileCreationIntentExtractor, IntentExtractor
from .tokens import token_limit

logger = structlog.get_logger()

DEFAULT_OLLAMA_URL = "http://localhost:11434"


class OllamaLLM(BaseLLM):
    """Ollama local model backend."""

    def __init__(
        self,
        api_key: str = "",
        model: str = "llama3.2",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        top_p: float | None = None,
        timeout_s: float = 120.0,
        intent_extractor: IntentExtractor | None = None,
        client: httpx.AsyncClient | None = None,
        delta_mode: str = "incremental",
    ):
        super().__init__(
            api_key,
            model,
            base_url or DEFAULT_OLLAMA_URL,
            max_tokens,
            temperature,
            top_p,
            timeout_s,
            intent_extractor=intent_extractor or FileCreationIntentExtractor(),
        )
        self.delta_mode = delta_mode
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout_s)

    @property
    def provider_name(self) -> str:
        return "ollama"

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_streaming=True,
            supports_vision=False,
            supports_function_calling=False,
            supports_system_prompts=True,
            max_context_length=token_limit(self.model),
        )

    def _convert_messages(
        self, messages: list[Message], system_prompt: str | None = None
    ) -> list[dict[str, Any]]:
        """Flatten Messages into Ollama chat messages (text only)."""
        converted: list[dict[str, Any]] = []
        if system_prompt:
            converted.append({"role": "system", "content": system_prompt})

        for msg in messages:
            chunks = []
            for part in msg.parts:
                if part.thought:
                    continue
                if part.text:
                    chunks.append(part.text)
                elif part.function_response is not None:
                    fr = part.function_response
                    chunks.append(f"[{fr.name} result] {json.dumps(fr.response, default=str)}")
            if chunks:
                converted.append({
                    "role": "assistant" if msg.role == "model" else "user",
                    "content": "\n".join(chunks),
                })

        return converted

    def _build_body(
        self, messages: list[Message], config: GenerateConfig | None, model: str | None, stream: bool
    ) -> dict[str, Any]:
        cfg = self._resolve(config)
        options: dict[str, Any] = {
            "temperature": cfg.temperature,
            "num_predict": cfg.max_tokens,
        }
        if cfg.top_p is not None:
            options["top_p"] = cfg.top_p
        return {
            "model": model or self.model,
            "messages": self._convert_messages(messages, cfg.system_prompt),
            "stream": stream,
            "options": options,
        }

    @staticmethod
    def _usage(data: dict[str, Any]) -> UsageMetadata:
        prompt = data.get("prompt_eval_count") or 0
        output = data.get("eval_count") or 0
        return UsageMetadata(
            prompt_token_count=prompt,
            candidates_token_count=output,
            total_token_count=prompt + output,
        )

    async def generate(
        self,
        messages: list[Message],
        config: GenerateConfig | None = None,
        model: str | None = None,
    ) -> LLMResponse:
        """Generate a response from the local model."""
        body = self._build_body(messages, config, model, stream=False)

        try:
            response = await self.client.post("/api/chat", json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error("Ollama API error", error=str(e))
            raise wrap_provider_error(e, self.provider_name) from e
        except json.JSONDecodeError as e:
            raise PermanentBackendError(f"Malformed Ollama response: {e}", provider=self.provider_name) from e

        message = data.get("message") or {}
        text = message.get("content", "")
        parts: list[Part] = []
        if message.get("thinking"):
            parts.append(Part(text=message["thinking"], thought=True))
        if text:
            parts.append(Part(text=text))
        parts.extend(self._extract_intents(text))

        return LLMResponse(
            parts=parts,
            usage=self._usage(data),
            model=data.get("model", body["model"]),
            finish_reason=data.get("done_reason"),
            raw_response=data,
        )

    async def generate_stream(
        self,
        messages: list[Message],
        config: GenerateConfig | None = None,
        model: str | None = None,
    ) -> AsyncIterator[LLMResponse]:
        """Open a streaming request to the local model."""
        body = self._build_body(messages, config, model, stream=True)
        request = self.client.build_request("POST", "/api/chat", json=body)

        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error("Ollama streaming error", error=str(e))
            raise wrap_provider_error(e, self.provider_name) from e

        if response.is_error:
            await response.aread()
            await response.aclose()
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error("Ollama streaming error", status=response.status_code, body=response.text[:200])
                raise wrap_provider_error(e, self.provider_name) from e

        return self._iter_stream(response, body["model"])

    async def _iter_stream(self, response: httpx.Response, model: str) -> AsyncIterator[LLMResponse]:
        normalizer = DeltaNormalizer(self.delta_mode)

        try:
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError as e:
                    raise PermanentBackendError(
                        f"Malformed Ollama stream line: {line[:100]}", provider=self.provider_name
                    ) from e

                if data.get("error"):
                    raise PermanentBackendError(str(data["error"]), provider=self.provider_name)

                message = data.get("message") or {}
                if message.get("thinking"):
                    yield LLMResponse(parts=[Part(text=message["thinking"], thought=True)], model=model)

                text = normalizer.feed(message.get("content", ""))
                if text:
                    yield LLMResponse(parts=[Part(text=text)], model=model)

                if data.get("done"):
                    yield LLMResponse(
                        parts=self._extract_intents(normalizer.text),
                        usage=self._usage(data),
                        model=model,
                        finish_reason=data.get("done_reason", "stop"),
                    )
                    return
        except httpx.HTTPError as e:
            logger.error("Ollama streaming error", error=str(e))
            raise wrap_provider_error(e, self.provider_name) from e
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

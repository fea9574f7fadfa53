"""
Backend factory for creating provider instances.

Backends are looked up by id in a registry of builders, so new backends can
be plugged in with register_adapter without touching the agent core.
"""

from typing import Callable, Mapping

import structlog

from ..config import ProviderConfig
from ..errors import ConfigurationError
from .anthropic import AnthropicLLM
from .base import BaseLLM
from .google import GoogleGeminiLLM
from .ollama import OllamaLLM
from .openai import OpenAILLM

logger = structlog.get_logger()

AdapterBuilder = Callable[[ProviderConfig], BaseLLM]

OPENROUTER_URL = "https://openrouter.ai/api/v1"

_ADAPTERS: dict[str, AdapterBuilder] = {}


def register_adapter(provider: str, builder: AdapterBuilder) -> None:
    """Register (or replace) the builder for a backend id."""
    _ADAPTERS[provider.lower()] = builder


def unregister_adapter(provider: str) -> None:
    _ADAPTERS.pop(provider.lower(), None)


def default_adapters() -> dict[str, AdapterBuilder]:
    """A copy of the registered builders, to extend without touching the defaults."""
    return dict(_ADAPTERS)


def available_providers(registry: Mapping[str, AdapterBuilder] | None = None) -> list[str]:
    return sorted(_ADAPTERS if registry is None else registry)


def _common(config: ProviderConfig) -> dict:
    return {
        "api_key": config.api_key,
        "model": config.model,
        "max_tokens": config.max_tokens,
        "temperature": config.temperature,
        "top_p": config.top_p,
        "timeout_s": config.timeout_s,
    }


def _build_anthropic(config: ProviderConfig) -> BaseLLM:
    return AnthropicLLM(base_url=config.base_url, **_common(config))


def _build_openai(config: ProviderConfig) -> BaseLLM:
    return OpenAILLM(base_url=config.base_url, **_common(config))


def _build_openrouter(config: ProviderConfig) -> BaseLLM:
    return OpenAILLM(base_url=config.base_url or OPENROUTER_URL, provider="openrouter", **_common(config))


def _build_gemini(config: ProviderConfig) -> BaseLLM:
    return GoogleGeminiLLM(base_url=config.base_url, **_common(config))


def _build_ollama(config: ProviderConfig) -> BaseLLM:
    return OllamaLLM(base_url=config.base_url, **_common(config))


register_adapter("anthropic", _build_anthropic)
register_adapter("openai", _build_openai)
register_adapter("openrouter", _build_openrouter)
register_adapter("gemini", _build_gemini)
register_adapter("google", _build_gemini)
register_adapter("ollama", _build_ollama)


def create_llm(config: ProviderConfig, registry: Mapping[str, AdapterBuilder] | None = None) -> BaseLLM:
    """Create a backend instance for the configured backend id.

    Looks the id up in registry when one is given, otherwise in the builders
    added with register_adapter.
    """
    adapters = _ADAPTERS if registry is None else registry
    builder = adapters.get(config.provider.lower())
    if builder is None:
        raise ConfigurationError(
            f"Unknown LLM provider: {config.provider!r} "
            f"(available: {', '.join(available_providers(adapters))})"
        )
    if config.auth_type == "api_key" and not config.api_key and config.provider != "ollama":
        raise ConfigurationError(f"No API key configured for provider {config.provider!r}")

    logger.info("Creating LLM backend", provider=config.provider, model=config.model)
    return builder(config)

"""
LLM module for multi-provider model support.

Providers:
- Anthropic Claude (native SDK)
- OpenAI GPT (native SDK)
- Google Gemini (native SDK)
- OpenRouter (via OpenAI-compatible endpoint)
- Ollama (local HTTP API)
"""

from .base import (
    BaseLLM,
    DeltaNormalizer,
    FunctionCall,
    FunctionResponse,
    GenerateConfig,
    LLMResponse,
    Message,
    Part,
    ProviderCapabilities,
    ToolDefinition,
    UsageMetadata,
)
from .anthropic import AnthropicLLM
from .openai import OpenAILLM
from .google import GoogleGeminiLLM
from .ollama import OllamaLLM
from .factory import create_llm, default_adapters, register_adapter
from .intent import FileCreationIntentExtractor, IntentExtractor
from .tokens import estimate_tokens, token_limit

__all__ = [
    "BaseLLM",
    "DeltaNormalizer",
    "FunctionCall",
    "FunctionResponse",
    "GenerateConfig",
    "LLMResponse",
    "Message",
    "Part",
    "ProviderCapabilities",
    "ToolDefinition",
    "UsageMetadata",
    "AnthropicLLM",
    "OpenAILLM",
    "GoogleGeminiLLM",
    "OllamaLLM",
    "create_llm",
    "default_adapters",
    "register_adapter",
    "FileCreationIntentExtractor",
    "IntentExtractor",
    "estimate_tokens",
    "token_limit",
]

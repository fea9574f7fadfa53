"""
Context window sizes and token estimation.
"""

import json
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .base import Message

# Approximate tokens per character (conservative estimate)
CHARS_PER_TOKEN = 4

# Overhead for role markers and formatting
MESSAGE_OVERHEAD_CHARS = 20

# Longest prefix wins, so specific entries sit beside their family.
TOKEN_LIMITS: dict[str, int] = {
    "gemini-1.5-pro": 2_097_152,
    "gemini-1.5-flash": 1_048_576,
    "gemini-2.0-flash": 1_048_576,
    "gemini-2.5-pro": 1_048_576,
    "gemini-2.5-flash": 1_048_576,
    "claude-3": 200_000,
    "claude-sonnet-4": 200_000,
    "claude-opus-4": 200_000,
    "claude-haiku-4": 200_000,
    "anthropic/claude": 200_000,
    "gpt-4o": 128_000,
    "gpt-4.1": 1_047_576,
    "gpt-4-turbo": 128_000,
    "gpt-4": 8_192,
    "gpt-3.5-turbo": 16_385,
    "o1": 200_000,
    "o3": 200_000,
    "o4-mini": 200_000,
    "llama3.3": 128_000,
    "llama3.2": 128_000,
    "llama3.1": 128_000,
    "qwen3": 128_000,
    "qwen2.5": 128_000,
    "qwen2.5-coder": 128_000,
    "deepseek-r1": 128_000,
    "deepseek-coder": 128_000,
    "mistral:7b": 32_768,
    "mistral-large": 128_000,
    "gemma3": 8_192,
    "phi4": 16_384,
}


def token_limit(model: str) -> int | None:
    """Context window for a model id, or None if the model is unknown."""
    name = model.lower()
    best: str | None = None
    for prefix in TOKEN_LIMITS:
        if name.startswith(prefix) and (best is None or len(prefix) > len(best)):
            best = prefix
    return TOKEN_LIMITS[best] if best is not None else None


def _part_chars(part) -> int:
    chars = len(part.text or "")
    if part.function_call is not None:
        chars += len(part.function_call.name) + len(json.dumps(part.function_call.args, default=str))
    if part.function_response is not None:
        chars += len(part.function_response.name) + len(json.dumps(part.function_response.response, default=str))
    return chars


def estimate_tokens(messages: Iterable["Message"]) -> int:
    """Estimate token count for a list of messages."""
    total_chars = 0
    count = 0
    for message in messages:
        count += 1
        total_chars += sum(_part_chars(p) for p in message.parts)
    return (total_chars + count * MESSAGE_OVERHEAD_CHARS) // CHARS_PER_TOKEN

"""
Context compression - keep the conversation inside the model's context window.

When the curated history approaches the model's context limit, the whole
history is replaced with a model-written summary. The summary request and
the summary become the new two-message history.
"""

from dataclasses import dataclass
from typing import Callable

import structlog

from ..llm.base import Message
from ..llm.tokens import token_limit
from .chat import ChatSession

logger = structlog.get_logger()

# Compress when 95% of the context window is used
DEFAULT_COMPRESSION_THRESHOLD = 0.95

COMPRESSION_PROMPT = (
    "Summarize our conversation up to this point. The summary should be a concise yet "
    "comprehensive overview of all key topics, questions, answers, and important details "
    "discussed. This summary will replace the current chat history to conserve tokens, so "
    "it must capture everything essential to understand the context and continue our "
    "conversation effectively as if no information was lost."
)


@dataclass(frozen=True)
class CompressionInfo:
    """Token counts before and after a compression."""

    original_token_count: int
    new_token_count: int


class ChatCompressor:
    """Summarizes a chat session's history when it grows too large."""

    def __init__(
        self,
        chat: ChatSession,
        threshold: float = DEFAULT_COMPRESSION_THRESHOLD,
        limit_for: Callable[[str], int | None] = token_limit,
    ):
        if not 0 < threshold <= 1:
            raise ValueError("threshold must be within (0, 1]")
        self.chat = chat
        self.threshold = threshold
        self.limit_for = limit_for

    async def compress(self, force: bool = False) -> CompressionInfo | None:
        """Compress the history; returns None when skipped."""
        curated = self.chat.get_history(curated=True)
        if not curated:
            return None

        model = self.chat.model
        original_count = await self.chat.llm.count_tokens(curated, model=model)
        if original_count is None:
            logger.warning("Could not count tokens, skipping compression", model=model)
            return None

        limit = self.limit_for(model)
        if not force:
            if limit is None:
                logger.debug("Unknown context limit, skipping compression", model=model)
                return None
            if original_count < self.threshold * limit:
                return None

        logger.info(
            "Compressing chat history",
            model=model,
            tokens=original_count,
            limit=limit,
            forced=force,
            max_context=self.chat.llm.capabilities.max_context_length,
        )

        response = await self.chat.send(COMPRESSION_PROMPT)
        summary = response.text

        self.chat.set_history([Message.user(COMPRESSION_PROMPT), Message.model(summary)])

        new_count = await self.chat.llm.count_tokens(self.chat.get_history(curated=True), model=model)
        info = CompressionInfo(original_token_count=original_count, new_token_count=new_count or 0)

        logger.info(
            "Compression complete",
            original_tokens=info.original_token_count,
            new_tokens=info.new_token_count,
        )
        return info

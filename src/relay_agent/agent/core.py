"""
Core agent implementation - the loop that ties model turns and tools together.

For each user message the agent:
1. Compresses the history if it is close to the model's context limit
2. Runs a turn against the model and streams its events upward
3. Schedules the tool calls the model asked for (approval, checkpoint, execution)
4. Sends the tool responses back as the next turn, until the model stops
   calling tools, the operator cancels every call, or the turn limit is hit
"""

from contextlib import aclosing
from pathlib import Path
from typing import AsyncIterator, Callable, Mapping

import structlog

from ..config import Settings
from ..errors import ConfigurationError, StructuredError
from ..llm import BaseLLM, GenerateConfig, Message, Part, create_llm
from ..llm.factory import AdapterBuilder
from ..logging_config import configure_logging
from ..tools import (
    ApprovalManager,
    CheckpointManager,
    CheckpointRecord,
    GitSnapshotService,
    ToolCallRecord,
    ToolCallScheduler,
    ToolRegistry,
)
from .cancellation import CancelToken
from .chat import ChatSession, as_message
from .compaction import ChatCompressor
from .diagnostics import ErrorReporter
from .events import (
    ChatCompressedEvent,
    ContentEvent,
    ErrorEvent,
    StreamEvent,
    UserCancelledEvent,
)
from .retry import FallbackHandler, RetryController, RetryPolicy
from .turn import Turn

logger = structlog.get_logger()

DEFAULT_SYSTEM_PROMPT = """You are a capable assistant that completes tasks by calling the tools you are given.

Guidelines:
1. Be helpful, accurate, and concise
2. Use tools when you need information from the environment or to change it
3. Before a destructive operation, say what you are about to do
4. If a tool call is rejected, do not retry it; ask the user how to proceed
5. If you're unsure, say so"""


def _retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        initial_delay_s=settings.retry_initial_delay_s,
        max_delay_s=max(settings.retry_max_delay_s, settings.retry_initial_delay_s),
    )


class Agent:
    """Main agent class that runs the model/tool loop for a conversation.

    All collaborators are injected; from_settings builds the default set.
    """

    def __init__(
        self,
        llm: BaseLLM,
        tool_registry: ToolRegistry | None = None,
        settings: Settings | None = None,
        *,
        retry: RetryController | None = None,
        approvals: ApprovalManager | None = None,
        checkpoints: CheckpointManager | None = None,
        reporter: ErrorReporter | None = None,
        on_tool_update: Callable[[list[ToolCallRecord]], None] | None = None,
        system_prompt: str | None = None,
        history: list[Message] | None = None,
    ):
        self.settings = settings or Settings()
        self.llm = llm
        self.tool_registry = tool_registry or ToolRegistry()
        self.max_turns = self.settings.max_turns
        self.approvals = approvals or ApprovalManager(approval_required=self.settings.approval_required)
        self.checkpoints = checkpoints
        self.reporter = reporter or ErrorReporter(self.settings.diagnostics_dir)
        self.retry = retry or RetryController(
            llm.model,
            _retry_policy(self.settings),
            auth_type=self.settings.auth_type,
        )

        self.chat = ChatSession(
            llm,
            self.retry,
            GenerateConfig(system_prompt=system_prompt or self.settings.system_prompt or DEFAULT_SYSTEM_PROMPT),
            history,
        )
        self.compressor = ChatCompressor(self.chat, self.settings.compression_threshold)
        self.scheduler = ToolCallScheduler(
            self.tool_registry,
            self.approvals,
            self.checkpoints,
            on_update=on_tool_update,
            history_provider=self.chat.get_history,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        tool_registry: ToolRegistry | None = None,
        fallback: FallbackHandler | None = None,
        adapters: Mapping[str, AdapterBuilder] | None = None,
        **kwargs,
    ) -> "Agent":
        """Build an agent and its collaborators from settings."""
        configure_logging(settings.log_level, settings.json_logs)
        config = settings.get_provider_config()
        llm = create_llm(config, adapters)

        if fallback is None and settings.fallback_model:
            fallback_model = settings.fallback_model

            async def fallback(model: str, error: Exception) -> str | None:
                return fallback_model if model != fallback_model else None

        retry = RetryController(
            config.model,
            _retry_policy(settings),
            fallback=fallback,
            auth_type=config.auth_type,
        )

        checkpoints = None
        if settings.checkpointing_enabled:
            checkpoint_dir = Path(settings.checkpoint_dir)
            snapshots = GitSnapshotService(settings.project_root, checkpoint_dir.parent / "history")
            checkpoints = CheckpointManager(checkpoint_dir, snapshots)

        return cls(
            llm,
            tool_registry,
            settings,
            retry=retry,
            checkpoints=checkpoints,
            system_prompt=config.system_prompt,
            **kwargs,
        )

    @property
    def model(self) -> str:
        return self.chat.model

    def _generate_config(self) -> GenerateConfig | None:
        if not self.llm.capabilities.supports_function_calling or not len(self.tool_registry):
            return None
        return GenerateConfig(tools=self.tool_registry.get_definitions())

    async def run(
        self,
        message: Message | str | list[Part],
        token: CancelToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Process one user message, yielding events until the exchange settles."""
        token = token or CancelToken()
        request = as_message(message)

        for turn_number in range(1, self.max_turns + 1):
            info = await self.compressor.compress()
            if info is not None:
                yield ChatCompressedEvent(info=info)

            turn = Turn(self.chat, self.reporter)
            stopped = False
            async with aclosing(turn.run(request, token, self._generate_config())) as events:
                async for event in events:
                    yield event
                    if isinstance(event, (UserCancelledEvent, ErrorEvent)):
                        stopped = True

            if stopped or not turn.pending_tool_calls:
                return

            batch = await self.scheduler.schedule(turn.pending_tool_calls, token)

            if token.cancelled:
                # Every call is terminal here; answer them so the next request stays well formed.
                self.chat.add_history(batch.to_message())
                logger.info("Turn cancelled during tool execution", turn=turn_number)
                yield UserCancelledEvent()
                return

            if batch.all_cancelled:
                # Tell the model the calls did not happen, without asking it to continue.
                self.chat.add_history(batch.to_message())
                logger.info("All tool calls cancelled, ending turn", calls=len(batch.records))
                return

            request = batch.to_message()

        logger.warning("Maximum number of turns reached", max_turns=self.max_turns)
        yield ErrorEvent(error=StructuredError(message=f"Reached the maximum of {self.max_turns} turns"))

    async def process_message(self, message: str, token: CancelToken | None = None) -> str:
        """Process a user message and return the response text."""
        chunks: list[str] = []
        async with aclosing(self.run(message, token)) as events:
            async for event in events:
                if isinstance(event, ContentEvent):
                    chunks.append(event.text)
                elif isinstance(event, ErrorEvent):
                    return f"I encountered an error processing your message: {event.error.message}"
                elif isinstance(event, UserCancelledEvent):
                    break
        return "".join(chunks)

    async def restore_checkpoint(self, path: Path | str) -> CheckpointRecord:
        """Roll files back to a checkpoint and reinstate its conversation."""
        if self.checkpoints is None:
            raise ConfigurationError("Checkpointing is not enabled")
        record = await self.checkpoints.restore(path)
        self.chat.set_history(record.messages)
        return record

    async def aclose(self) -> None:
        await self.llm.aclose()

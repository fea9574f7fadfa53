"""
Base classes for model backends.

All adapters speak the same message model: a Message has a role ("user" or
"model") and an ordered list of Parts; a Part carries text, a thought, a
function call or a function response.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, AsyncIterator, Literal

from .tokens import estimate_tokens

if TYPE_CHECKING:
    from .intent import IntentExtractor

Role = Literal["user", "model"]
VALID_ROLES: tuple[str, ...] = ("user", "model")


@dataclass
class FunctionCall:
    """A tool invocation requested by the model."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass
class FunctionResponse:
    """The result of a tool invocation, fed back to the model."""

    id: str
    name: str
    response: dict[str, Any] = field(default_factory=dict)


@dataclass
class Part:
    """One fragment of a message."""

    text: str | None = None
    thought: bool = False
    function_call: FunctionCall | None = None
    function_response: FunctionResponse | None = None

    @property
    def is_empty(self) -> bool:
        return self.text is None and self.function_call is None and self.function_response is None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.text is not None:
            data["text"] = self.text
        if self.thought:
            data["thought"] = True
        if self.function_call is not None:
            fc = self.function_call
            data["functionCall"] = {"name": fc.name, "args": fc.args, "id": fc.id}
        if self.function_response is not None:
            fr = self.function_response
            data["functionResponse"] = {"id": fr.id, "name": fr.name, "response": fr.response}
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Part":
        fc = data.get("functionCall")
        fr = data.get("functionResponse")
        return cls(
            text=data.get("text"),
            thought=bool(data.get("thought", False)),
            function_call=FunctionCall(fc["name"], dict(fc.get("args") or {}), fc.get("id")) if fc else None,
            function_response=FunctionResponse(fr["id"], fr["name"], dict(fr.get("response") or {})) if fr else None,
        )


@dataclass
class Message:
    """A message in the conversation history."""

    role: Role
    parts: list[Part] = field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role="user", parts=[Part(text=text)])

    @classmethod
    def model(cls, text: str) -> "Message":
        return cls(role="model", parts=[Part(text=text)])

    @property
    def text(self) -> str:
        """Concatenated visible text (thoughts excluded)."""
        return "".join(p.text for p in self.parts if p.text and not p.thought)

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [p.function_call for p in self.parts if p.function_call is not None]

    @property
    def function_responses(self) -> list[FunctionResponse]:
        return [p.function_response for p in self.parts if p.function_response is not None]

    def is_valid(self) -> bool:
        """A message is well formed when it has parts and none of them is empty."""
        if not self.parts:
            return False
        for part in self.parts:
            if part.is_empty:
                return False
            if not part.thought and part.text is not None and part.text == "":
                return False
        return True

    def is_function_response(self) -> bool:
        return self.role == "user" and bool(self.parts) and all(
            p.function_response is not None for p in self.parts
        )

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "parts": [p.to_dict() for p in self.parts]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(role=data["role"], parts=[Part.from_dict(p) for p in data.get("parts", [])])


@dataclass
class UsageMetadata:
    """Token accounting for one response."""

    prompt_token_count: int = 0
    candidates_token_count: int = 0
    total_token_count: int = 0
    thoughts_token_count: int = 0


@dataclass
class LLMResponse:
    """A complete response, or one streamed chunk of one."""

    parts: list[Part] = field(default_factory=list)
    usage: UsageMetadata | None = None
    model: str = ""
    finish_reason: str | None = None
    raw_response: Any = None

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if p.text and not p.thought)

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [p.function_call for p in self.parts if p.function_call is not None]

    def to_message(self) -> Message:
        return Message(role="model", parts=list(self.parts))


@dataclass
class ToolDefinition:
    """Definition of a tool that the model can use."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class GenerateConfig:
    """Per-request generation parameters. None means "use the adapter default"."""

    system_prompt: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    tools: list[ToolDefinition] | None = None

    def merged(self, override: "GenerateConfig | None") -> "GenerateConfig":
        """Overlay the non-None fields of override onto this config."""
        if override is None:
            return replace(self)
        values = {
            name: getattr(override, name)
            for name in ("system_prompt", "temperature", "top_p", "max_tokens", "tools")
            if getattr(override, name) is not None
        }
        return replace(self, **values)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Advisory metadata about what a backend supports."""

    supports_streaming: bool = True
    supports_vision: bool = False
    supports_function_calling: bool = True
    supports_system_prompts: bool = True
    max_context_length: int | None = None


class DeltaNormalizer:
    """Turn a backend's text stream into incremental deltas.

    Some backends send only new text per chunk, others resend everything
    generated so far. In "auto" mode a chunk that starts with the text seen so
    far is treated as cumulative.
    """

    MODES = ("incremental", "cumulative", "auto")

    def __init__(self, mode: str = "incremental"):
        if mode not in self.MODES:
            raise ValueError(f"Unknown delta mode: {mode}")
        self.mode = mode
        self._seen = ""

    @property
    def text(self) -> str:
        return self._seen

    def feed(self, chunk: str) -> str:
        if not chunk:
            return ""
        if self.mode == "incremental":
            self._seen += chunk
            return chunk

        if self._seen and len(chunk) >= len(self._seen) and chunk.startswith(self._seen):
            if self.mode == "auto" and len(chunk) == len(self._seen):
                # Ambiguous: an exact repeat is treated as new text.
                self._seen += chunk
                return chunk
            delta = chunk[len(self._seen):]
            self._seen = chunk
            return delta

        if self.mode == "cumulative":
            # Backend rewrote earlier output; restart from this snapshot.
            self._seen = chunk
            return chunk

        self._seen += chunk
        return chunk


class BaseLLM(ABC):
    """Base class for model backends."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        top_p: float | None = None,
        timeout_s: float = 120.0,
        intent_extractor: "IntentExtractor | None" = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.timeout_s = timeout_s
        self.intent_extractor = intent_extractor

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        pass

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities()

    @abstractmethod
    async def generate(
        self,
        messages: list[Message],
        config: GenerateConfig | None = None,
        model: str | None = None,
    ) -> LLMResponse:
        """Generate a complete response."""
        pass

    @abstractmethod
    async def generate_stream(
        self,
        messages: list[Message],
        config: GenerateConfig | None = None,
        model: str | None = None,
    ) -> AsyncIterator[LLMResponse]:
        """Open a streaming request.

        Awaiting this sends the request; it returns once the backend has
        accepted it. The returned iterator yields chunks with incremental text.
        """
        pass

    async def count_tokens(self, messages: list[Message], model: str | None = None) -> int | None:
        """Count prompt tokens. Backends without a tokenizer endpoint estimate."""
        return estimate_tokens(messages)

    async def aclose(self) -> None:
        """Release network resources."""
        return None

    def _resolve(self, config: GenerateConfig | None) -> GenerateConfig:
        defaults = GenerateConfig(
            temperature=self.temperature,
            top_p=self.top_p,
            max_tokens=self.max_tokens,
        )
        return defaults.merged(config)

    def _extract_intents(self, text: str) -> list[Part]:
        """Synthesize function calls from free text for backends without native tool calling."""
        if self.capabilities.supports_function_calling or self.intent_extractor is None:
            return []
        return [Part(function_call=call) for call in self.intent_extractor.extract(text)]

"""
Base classes for tools.
"""

import inspect
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Coroutine, Union

from ..llm.base import ToolDefinition

if TYPE_CHECKING:
    from ..agent.cancellation import CancelToken

# Argument names that conventionally hold the file a tool mutates
PATH_ARGUMENTS = ("file_path", "absolute_path", "path")


def synthesize_call_id(name: str) -> str:
    return f"{name}-{int(time.time() * 1000)}-{secrets.token_hex(6)}"


@dataclass
class ToolCallRequest:
    """A request to run one tool, as emitted by the model."""

    call_id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    client_initiated: bool = False


@dataclass
class ToolResult:
    """Result from a tool execution."""

    success: bool
    output: str = ""
    display: str | None = None
    data: Any = None
    error: str | None = None


class ConfirmationKind(str, Enum):
    EDIT = "edit"
    EXEC = "exec"
    MCP = "mcp"
    INFO = "info"


@dataclass
class ConfirmationDetails:
    """What the operator is shown before a tool runs."""

    kind: ConfirmationKind
    title: str
    prompt: str = ""
    file_name: str | None = None
    command: str | None = None
    urls: list[str] = field(default_factory=list)


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    param_type: str  # string, integer, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


ConfirmHandler = Callable[[dict[str, Any]], Union[ConfirmationDetails, None, Awaitable[ConfirmationDetails | None]]]


def affected_files(args: dict[str, Any]) -> list[str]:
    return [str(args[name]) for name in PATH_ARGUMENTS if args.get(name)]


@dataclass
class Tool:
    """
    Simple tool wrapper that can be created from a function.

    This is an alternative to the class-based BaseTool for simpler tools.
    """

    name: str
    description: str
    parameters: list[ToolParameter]
    handler: Callable[..., Coroutine[Any, Any, ToolResult]]
    confirm: ConfirmHandler | None = None
    restorable: bool = False

    def get_parameters_schema(self) -> dict[str, Any]:
        """Convert parameters to JSON Schema format."""
        properties = {}
        required = []

        for param in self.parameters:
            prop = {
                "type": param.param_type,
                "description": param.description,
            }
            if param.enum:
                prop["enum"] = param.enum
            if param.default is not None:
                prop["default"] = param.default

            properties[param.name] = prop

            if param.required:
                required.append(param.name)

        return {
            "type": "object",
            "properties": properties,
            "required": required,
        }

    async def should_confirm_execute(
        self, args: dict[str, Any], token: "CancelToken | None" = None
    ) -> ConfirmationDetails | None:
        if self.confirm is None:
            return None
        details = self.confirm(args)
        if inspect.isawaitable(details):
            details = await details
        return details

    async def execute(self, args: dict[str, Any], token: "CancelToken | None" = None) -> ToolResult:
        """Execute the tool handler."""
        return await self.handler(**args)

    def affected_files(self, args: dict[str, Any]) -> list[str]:
        return affected_files(args)

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.get_parameters_schema(),
        )


class BaseTool(ABC):
    """Base class for all tools."""

    # Mutates files; a checkpoint is taken before each execution
    restorable: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the tool name."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Get the tool description."""
        pass

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """Get the tool parameters schema (JSON Schema)."""
        pass

    async def should_confirm_execute(
        self, args: dict[str, Any], token: "CancelToken | None" = None
    ) -> ConfirmationDetails | None:
        """Return confirmation details if the operator must approve this call."""
        return None

    @abstractmethod
    async def execute(self, args: dict[str, Any], token: "CancelToken | None" = None) -> ToolResult:
        """Execute the tool with given arguments."""
        pass

    def affected_files(self, args: dict[str, Any]) -> list[str]:
        return affected_files(args)

    def to_definition(self) -> ToolDefinition:
        """Convert to a tool definition for the model."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

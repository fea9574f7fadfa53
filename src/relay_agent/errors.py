"""
Error taxonomy for relay-agent.

Backend failures are normalized into a small set of classes so callers can
decide between retry, fallback and surfacing without knowing which SDK
raised them.
"""

from dataclasses import dataclass
from typing import Any

import anthropic
import httpx
import openai


class AgentError(Exception):
    """Base class for all relay-agent errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "message": self.message}


class ConfigurationError(AgentError):
    """Invalid or incomplete configuration (unknown provider, missing key)."""


class BackendError(AgentError):
    """A model backend call failed."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        provider: str | None = None,
        retry_after_s: float | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.provider = provider
        self.retry_after_s = retry_after_s

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["status"] = self.status
        data["provider"] = self.provider
        return data


class TransientBackendError(BackendError):
    """Timeouts, 5xx and other conditions worth retrying."""

    retryable = True


class RateLimitError(TransientBackendError):
    """HTTP 429 / quota exhausted."""


class PermanentBackendError(BackendError):
    """Bad request, malformed response and other non-retryable failures."""


class AuthenticationError(PermanentBackendError):
    """Credentials were rejected; never swallowed by the turn engine."""


class ToolExecutionError(AgentError):
    """A tool raised while executing."""

    def __init__(self, tool_name: str, message: str, original_error: BaseException | None = None):
        super().__init__(message)
        self.tool_name = tool_name
        self.original_error = original_error


class OperationCancelledError(AgentError):
    """The cancellation token tripped while an operation was in flight."""

    def __init__(self, reason: str = "Operation cancelled"):
        super().__init__(reason)


class InvalidTransitionError(AgentError):
    """A tool call record was moved backwards or out of a terminal state."""


class SchedulerBusyError(AgentError):
    """A batch was scheduled while another batch is still running."""


class CheckpointError(AgentError):
    """Snapshotting or restoring files failed."""


@dataclass(frozen=True)
class StructuredError:
    """Error payload carried by ErrorEvent."""

    message: str
    status: int | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> "StructuredError":
        if isinstance(exc, BackendError):
            return cls(message=exc.message, status=exc.status)
        return cls(message=str(exc) or type(exc).__name__, status=extract_status_code(exc))


_AUTH_STATUS_CODES = frozenset({401, 403})
_TRANSIENT_STATUS_CODES = frozenset({408, 409, 500, 502, 503, 504})


def extract_status_code(exc: BaseException) -> int | None:
    """Find an HTTP status on an exception or anything in its cause chain."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        for attr in ("status_code", "status", "code"):
            value = getattr(current, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(current, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
        current = current.__cause__ or current.__context__
    return None


def extract_retry_after(exc: BaseException) -> float | None:
    """Read a Retry-After header (seconds) off an SDK/httpx exception."""
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


_TRANSPORT_ERRORS = (
    TimeoutError,
    httpx.TransportError,
    openai.APIConnectionError,
    anthropic.APIConnectionError,
)


def wrap_provider_error(exc: BaseException, provider: str) -> BackendError:
    """Map an SDK exception to the backend error taxonomy."""
    if isinstance(exc, BackendError):
        return exc

    message = str(exc) or type(exc).__name__
    status = extract_status_code(exc)
    kwargs: dict[str, Any] = {"status": status, "provider": provider}

    if status in _AUTH_STATUS_CODES:
        return AuthenticationError(message, **kwargs)
    if status == 429:
        return RateLimitError(message, retry_after_s=extract_retry_after(exc), **kwargs)
    if status in _TRANSIENT_STATUS_CODES or (status is not None and status >= 500):
        return TransientBackendError(message, retry_after_s=extract_retry_after(exc), **kwargs)
    if status is None and isinstance(exc, _TRANSPORT_ERRORS):
        return TransientBackendError(message, **kwargs)
    return PermanentBackendError(message, **kwargs)

"""
Retry and model fallback around backend calls.

Transient failures (timeouts, 5xx, 429) are retried with exponential backoff
and jitter. When rate limiting persists for a credential class that allows it,
an injected fallback handler may switch the session to another model.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, TypeVar

import structlog

from ..errors import BackendError, RateLimitError, TransientBackendError

logger = structlog.get_logger()

T = TypeVar("T")

FallbackHandler = Callable[[str, BackendError], Awaitable[str | None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for one logical backend call."""

    max_attempts: int = 5
    initial_delay_s: float = 5.0
    max_delay_s: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.3

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("delays must be non-negative")
        if self.max_delay_s < self.initial_delay_s:
            raise ValueError("max_delay_s must be >= initial_delay_s")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be within [0, 1]")

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Backoff before retry number `attempt` (1-based), with +/- jitter."""
        base = min(self.max_delay_s, self.initial_delay_s * self.backoff_multiplier ** (attempt - 1))
        spread = base * self.jitter
        offset = (rng or random).uniform(-spread, spread) if spread else 0.0
        return max(0.0, base + offset)


class RetryController:
    """Runs backend calls with backoff; owns the session's active model id."""

    def __init__(
        self,
        model: str,
        policy: RetryPolicy | None = None,
        fallback: FallbackHandler | None = None,
        auth_type: str = "api_key",
        fallback_auth_types: Iterable[str] = ("oauth",),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self._model = model
        self.policy = policy or RetryPolicy()
        self.fallback = fallback
        self.auth_type = auth_type
        self.fallback_auth_types = frozenset(fallback_auth_types)
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        if model != self._model:
            logger.info("Active model changed", previous=self._model, model=model)
        self._model = model

    @property
    def can_fallback(self) -> bool:
        return self.fallback is not None and self.auth_type in self.fallback_auth_types

    async def run(self, call: Callable[[str], Awaitable[T]]) -> T:
        """Invoke call(model) until it succeeds or retries are exhausted."""
        attempt = 0
        consecutive_rate_limits = 0
        fell_back = False

        while True:
            attempt += 1
            try:
                return await call(self._model)
            except (TransientBackendError, TimeoutError) as exc:
                error = exc if isinstance(exc, TransientBackendError) else TransientBackendError(
                    str(exc) or "Request timed out"
                )
                if isinstance(error, RateLimitError):
                    consecutive_rate_limits += 1
                else:
                    consecutive_rate_limits = 0

                if (
                    consecutive_rate_limits >= self.policy.max_attempts
                    and not fell_back
                    and self.can_fallback
                ):
                    fell_back = True
                    new_model = await self.fallback(self._model, error)  # type: ignore[misc]
                    if new_model and new_model != self._model:
                        logger.warning(
                            "Persistent rate limiting, switching model",
                            previous=self._model,
                            model=new_model,
                        )
                        self._model = new_model
                        attempt = 0
                        consecutive_rate_limits = 0
                        continue

                if attempt >= self.policy.max_attempts:
                    logger.error(
                        "Backend call failed after retries",
                        attempts=attempt,
                        model=self._model,
                        status=error.status,
                        error=error.message,
                    )
                    raise

                if error.retry_after_s is not None:
                    delay = error.retry_after_s
                else:
                    delay = self.policy.delay_for(attempt, self._rng)
                logger.warning(
                    "Retrying backend call",
                    attempt=attempt,
                    max_attempts=self.policy.max_attempts,
                    delay_s=round(delay, 2),
                    status=error.status,
                    error=error.message,
                )
                await self._sleep(delay)

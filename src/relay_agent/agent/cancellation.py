"""
Cooperative cancellation for one turn.

A CancelToken is created per user turn and handed to the provider stream,
every approval wait and every tool execution of that turn.
"""

import asyncio
import inspect
from typing import Awaitable, TypeVar

import structlog

from ..errors import OperationCancelledError

logger = structlog.get_logger()

T = TypeVar("T")


class CancelToken:
    """One-shot cancellation signal."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Operation cancelled by user") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.info("Cancellation requested", reason=reason)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError(self.reason or "Operation cancelled")

    async def race(self, aw: Awaitable[T]) -> T:
        """Await aw, abandoning it if the token trips first.

        Raises OperationCancelledError when cancelled; if both finish in the
        same tick, cancellation wins and the result is discarded.
        """
        if self.cancelled:
            if inspect.iscoroutine(aw):
                aw.close()
            self.raise_if_cancelled()

        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if self.cancelled:
            if not task.done():
                task.cancel()
            # Let the abandoned work settle; its outcome is irrelevant now.
            await asyncio.gather(task, return_exceptions=True)
            self.raise_if_cancelled()

        waiter.cancel()
        return task.result()

"""
Cooperative cancellation for in-flight generation runs.

One token per run. Suspension points (oracle calls, backoff sleeps, the
verification wait) race their work against the token so that a cancel
unblocks them immediately instead of after the network call returns.
"""

import asyncio
from typing import Any, Awaitable, Optional, TypeVar

from buildloop.core.exceptions import GenerationCancelledError

T = TypeVar("T")


def _consume_result(task: "asyncio.Future[Any]") -> None:
    # Abandoned tasks may still fail; retrieve the exception so asyncio does not report it
    if not task.cancelled():
        task.exception()


class CancellationToken:
    """Idempotent, one-shot cancellation handle"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled by user") -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelledError(self.reason or "Cancelled by user")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token fires first.

        Raises:
            GenerationCancelledError: the token fired before the work finished
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()
            if not task.done():
                task.cancel()
                task.add_done_callback(_consume_result)

        if self.cancelled:
            if task.done():
                _consume_result(task)
            self.raise_if_cancelled()
        return task.result()

    async def sleep(self, delay: float) -> None:
        """Sleep that ends early (with GenerationCancelledError) when the token fires"""
        if delay <= 0:
            self.raise_if_cancelled()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

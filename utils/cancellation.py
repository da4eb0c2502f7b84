"""
Cancellation tokens for long-running pipeline operations.

A token is created per turn, per listen and per synthesis request. Every
await on network or audio I/O is raced against the token so a user stop
settles pending work immediately with StoppedByUser.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

from core.errors import StoppedByUser

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """One-shot cancellation signal bound to the running event loop."""

    def __init__(self, parent: Optional["CancelToken"] = None):
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None
        if parent is not None:
            if parent.cancelled:
                self.cancel(parent.reason)
            else:
                parent.add_callback(lambda: self.cancel(parent.reason))

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        """Cancel the token. Idempotent."""
        if self._event.is_set():
            return
        self.reason = reason or "cancelled"
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancel (immediately if already cancelled)."""
        if self._event.is_set():
            callback()
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StoppedByUser(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for seconds, raising StoppedByUser as soon as the token is cancelled."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await awaitable unless the token is cancelled first.

        Cancellation always wins: if the token is cancelled by the time the
        awaitable settles, StoppedByUser is raised even when the awaitable
        produced a result or an error.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if self.cancelled:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.debug(f"Discarded outcome after cancellation: {e}")
            elif not task.cancelled():
                # Consume the outcome so it is not reported as unretrieved.
                task.exception()
            raise StoppedByUser(self.reason or "cancelled")

        return task.result()

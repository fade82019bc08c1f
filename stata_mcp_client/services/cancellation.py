"""Cooperative cancellation token passed through every suspension point."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from stata_mcp_client.errors import Cancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []
        self._unlink: Callable[[], None] | None = None
        if parent is not None:
            if parent.cancelled:
                self.cancel(parent.reason or "cancelled")
            else:
                self._unlink = parent.add_callback(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation; returns False when already cancelled."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        for callback in list(self._callbacks):
            try:
                callback(reason)
            except Exception:
                logger.exception("Cancellation callback failed")
        self._callbacks.clear()
        return True

    def add_callback(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Run callback on cancellation; returns a function that detaches it."""
        if self.cancelled:
            callback(self._reason or "cancelled")
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def detach(self) -> None:
        """Stop following the parent token."""
        if self._unlink is not None:
            self._unlink()
            self._unlink = None

    async def wait(self) -> str:
        await self._event.wait()
        return self._reason or "cancelled"

    def raise_if_cancelled(self, message: str = "Request cancelled") -> None:
        if self.cancelled:
            raise Cancelled(message)

    async def run(self, awaitable: Awaitable[T], message: str = "Request cancelled") -> T:
        """Await ``awaitable`` unless this token is cancelled first."""
        self.raise_if_cancelled(message)
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if work in done:
                return work.result()
            work.cancel()
            try:
                await work
            except (asyncio.CancelledError, Exception):
                logger.debug("Work ended after cancellation", exc_info=True)
            raise Cancelled(message)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()

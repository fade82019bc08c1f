"""Single-flight run serialization and cancellation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from stata_mcp_client.config.defaults import TOOL_BREAK_SESSION
from stata_mcp_client.errors import Cancelled
from stata_mcp_client.mcp.connection_manager import (
    STATUS_CONNECTED,
    STATUS_DISCONNECTED,
    STATUS_ERROR,
    STATUS_QUEUED,
    STATUS_RUNNING,
    ConnectionManager,
)
from stata_mcp_client.schemas.run_state import RunState
from stata_mcp_client.services.cancellation import CancellationToken
from stata_mcp_client.services.task_invoker import TaskInvoker
from stata_mcp_client.utils.ids import generate_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

PENDING = "pending"
ACTIVE = "active"


@dataclass
class QueueEntry:
    run_id: str
    label: str
    token: CancellationToken
    state: str = PENDING
    run: RunState | None = None
    break_sent: bool = False


class RunQueue:
    """At most one entry is active; the rest wait in submission order.

    ``asyncio.Lock`` wakes waiters first-in first-out, which gives the FIFO
    guarantee without a separate queue.
    """

    def __init__(self, connections: ConnectionManager, invoker: TaskInvoker):
        self._connections = connections
        self._invoker = invoker
        self._lock = asyncio.Lock()
        self._entries: dict[str, QueueEntry] = {}
        self._active: QueueEntry | None = None

    @property
    def active(self) -> QueueEntry | None:
        return self._active

    @property
    def pending_count(self) -> int:
        return sum(1 for e in self._entries.values() if e.state == PENDING)

    def entry(self, run_id: str) -> QueueEntry | None:
        return self._entries.get(run_id)

    async def submit(
        self,
        label: str,
        work: Callable[[QueueEntry], Awaitable[T]],
        *,
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> T:
        entry = QueueEntry(
            run_id=run_id or generate_id("run"),
            label=label,
            token=CancellationToken(parent=cancel_token),
        )
        self._entries[entry.run_id] = entry
        await self._refresh_status()
        failed = False
        try:
            async with self._lock:
                entry.token.raise_if_cancelled(f"{label} cancelled")
                entry.state = ACTIVE
                self._active = entry
                self._connections.busy = True
                await self._connections.set_status(STATUS_RUNNING)
                logger.debug("Run %s (%s) active", entry.run_id, label)
                return await work(entry)
        except Cancelled:
            raise
        except Exception:
            failed = True
            raise
        finally:
            self._entries.pop(entry.run_id, None)
            if self._active is entry:
                self._active = None
                self._connections.busy = False
            entry.token.detach()
            await self._refresh_status(failed=failed)

    async def cancel_all(self) -> bool:
        """Cancel every queued and active entry; True when anything was cancelled."""
        cancelled = False
        for entry in list(self._entries.values()):
            if entry.token.cancel("user cancelled"):
                cancelled = True
        if self._active is not None:
            await self._break_session(self._active)
        if cancelled:
            logger.info("Cancelled all runs")
        return cancelled

    async def cancel_run(self, run_id: str) -> bool:
        entry = self._entries.get(run_id)
        if entry is None:
            return False
        cancelled = entry.token.cancel("user cancelled")
        if entry is self._active:
            await self._break_session(entry)
        return cancelled

    async def _break_session(self, entry: QueueEntry) -> None:
        run = entry.run
        if run is None or run.task_id is None or entry.break_sent:
            return
        connection = self._connections.connection
        if connection is None:
            return
        entry.break_sent = True
        try:
            await self._invoker.invoke(
                connection, TOOL_BREAK_SESSION, {"task_id": run.task_id}, allow_refresh=False
            )
            logger.info("Sent break_session for task %s", run.task_id)
        except Exception as exc:
            logger.warning("break_session failed for task %s: %s", run.task_id, exc)

    async def _refresh_status(self, *, failed: bool = False) -> None:
        if self._active is not None:
            status = STATUS_RUNNING
        elif self.pending_count:
            status = STATUS_QUEUED
        elif failed:
            status = STATUS_ERROR
        elif self._connections.connection is not None:
            status = STATUS_CONNECTED
        else:
            status = STATUS_DISCONNECTED
        await self._connections.set_status(status)

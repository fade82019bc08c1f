"""Incremental reads of the worker's run log.

The tailer moves idle -> tailing -> draining -> closed. While tailing it reads
slices from the current offset and pauses when nothing new arrived. Draining
stops the tail loop, waits for its in-flight read, then reads back-to-back
until two consecutive empty slices.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable

from stata_mcp_client.config.defaults import (
    DEFAULT_LOG_POLL_INTERVAL_SECONDS,
    DEFAULT_LOG_READ_MAX_BYTES,
    DEFAULT_MAX_DRAIN_READS,
)
from stata_mcp_client.errors import Cancelled
from stata_mcp_client.mcp.protocol_models import LogSlice
from stata_mcp_client.schemas.run_state import LogCallback, RunState

logger = logging.getLogger(__name__)

IDLE = "idle"
TAILING = "tailing"
DRAINING = "draining"
CLOSED = "closed"

SliceReader = Callable[[str, int, int], Awaitable[LogSlice | None]]

_LINE_BREAK = re.compile(r"\r?\n")


class LineBufferedSink:
    """Forward complete lines to a callback; keep the partial tail until flush."""

    def __init__(self, on_line: LogCallback | None, *, suppressed: Callable[[], bool] | None = None):
        self._on_line = on_line
        self._suppressed = suppressed or (lambda: False)
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def write(self, chunk: str) -> None:
        if not chunk or self._suppressed():
            return
        self._pending += chunk
        *lines, self._pending = _LINE_BREAK.split(self._pending)
        for line in lines:
            self._emit(line)

    def flush(self) -> None:
        pending, self._pending = self._pending, ""
        if pending and not self._suppressed():
            self._emit(pending)

    def _emit(self, line: str) -> None:
        if self._on_line is None:
            return
        try:
            self._on_line(line)
        except Exception:
            logger.exception("Log callback failed")


class LogTailer:
    def __init__(
        self,
        read_slice: SliceReader,
        run: RunState,
        *,
        sink: LineBufferedSink | None = None,
        max_bytes: int = DEFAULT_LOG_READ_MAX_BYTES,
        poll_interval: float = DEFAULT_LOG_POLL_INTERVAL_SECONDS,
        max_drain_reads: int = DEFAULT_MAX_DRAIN_READS,
    ):
        self._read_slice = read_slice
        self._run = run
        self._sink = sink
        self._max_bytes = max_bytes
        self._poll_interval = poll_interval
        self._max_drain_reads = max_drain_reads
        self._state = IDLE
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def state(self) -> str:
        return self._state

    def start(self, path: str) -> bool:
        """Begin tailing ``path``; a path that arrives later is ignored."""
        if self._state != IDLE or not path:
            if path and path != self._run.log_path:
                logger.debug("Ignoring log path %s; already tailing %s", path, self._run.log_path)
            return False
        self._run.log_path = path
        self._state = TAILING
        self._task = asyncio.create_task(self._tail_loop())
        logger.debug("Tailing %s from offset %s", path, self._run.log_offset)
        return True

    async def drain(self) -> None:
        """Read whatever the worker wrote after the last tail read."""
        if self._state in (IDLE, CLOSED):
            self._state = CLOSED
            self._flush_sink()
            return
        self._state = DRAINING
        await self._stop_loop()
        empty_reads = 0
        for _ in range(self._max_drain_reads):
            if self._run.cancelled:
                break
            log_slice = await self._read()
            if log_slice is None:
                break
            if self._consume(log_slice):
                empty_reads = 0
                continue
            empty_reads += 1
            if empty_reads >= 2:
                break
        self._state = CLOSED
        self._flush_sink()

    async def close(self) -> None:
        """Stop without draining (cancelled or failed runs)."""
        if self._state == CLOSED:
            return
        self._stop.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        await self._stop_loop()
        self._state = CLOSED
        self._flush_sink()

    async def _stop_loop(self) -> None:
        self._stop.set()
        task, self._task = self._task, None
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.warning("Log tail loop failed", exc_info=True)

    async def _tail_loop(self) -> None:
        while not self._stop.is_set() and not self._run.cancelled:
            log_slice = await self._read()
            if log_slice is not None and self._consume(log_slice):
                continue
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _read(self) -> LogSlice | None:
        path = self._run.log_path
        if not path:
            return None
        try:
            return await self._read_slice(path, self._run.log_offset, self._max_bytes)
        except Cancelled:
            return None
        except Exception as exc:
            logger.debug("read_log failed for %s: %s", path, exc)
            return None

    def _consume(self, log_slice: LogSlice) -> bool:
        data = log_slice.data or ""
        self._run.advance_offset(log_slice.next_offset, data)
        if not data:
            return False
        self._run.append_log(data)
        if self._sink is not None:
            self._sink.write(data)
        return True

    def _flush_sink(self) -> None:
        if self._sink is not None:
            self._sink.flush()

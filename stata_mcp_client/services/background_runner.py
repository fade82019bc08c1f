"""Two-phase background runs: start, wait for completion, drain, fetch result.

Completion is whichever comes first of a ``task_done`` notification for the
run's task id or a terminal status from the ``get_task_status`` poll loop.
The notification subscription is opened before the start call so a
``task_done`` that arrives ahead of the start response is not lost.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from stata_mcp_client.config.defaults import (
    TERMINAL_TASK_STATUSES,
    TOOL_READ_LOG,
    TOOL_TASK_RESULT,
    TOOL_TASK_STATUS,
)
from stata_mcp_client.config.settings import StataClientSettings
from stata_mcp_client.errors import Cancelled, StataClientError
from stata_mcp_client.mcp.connection_manager import Connection, ConnectionManager
from stata_mcp_client.mcp.protocol_models import (
    LogPathEvent,
    LogSlice,
    LogTextEvent,
    ProgressEvent,
    TaskDoneEvent,
    parse_log_slice,
)
from stata_mcp_client.schemas.run_state import RunState
from stata_mcp_client.services.event_bus import NOTIFICATIONS, BusMessage
from stata_mcp_client.services.log_tailer import IDLE, LineBufferedSink, LogTailer
from stata_mcp_client.services.response_normalizer import payload_sources
from stata_mcp_client.services.task_invoker import TaskInvoker
from stata_mcp_client.utils.json_helpers import extract_text, try_parse_json

logger = logging.getLogger(__name__)

TASK_ID_KEYS = ("task_id", "taskId")
LOG_PATH_KEYS = ("log_path", "logPath")


def _pick(obj: Any, keys: tuple[str, ...]) -> str | None:
    if not isinstance(obj, dict):
        return None
    for key in keys:
        value = obj.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int) or (isinstance(value, str) and value.strip()):
            return str(value)
    return None


def _direct_field(response: Any, keys: tuple[str, ...]) -> str | None:
    return _pick(response, keys)


def _structured_field(response: Any, keys: tuple[str, ...]) -> str | None:
    structured = response.get("structuredContent") if isinstance(response, dict) else None
    if not isinstance(structured, dict):
        return None
    found = _pick(structured, keys)
    if found is None and isinstance(structured.get("result"), str):
        found = _pick(try_parse_json(structured["result"]), keys)
    return found


def _embedded_field(response: Any, keys: tuple[str, ...]) -> str | None:
    parsed = try_parse_json(extract_text(response))
    if not isinstance(parsed, dict):
        return None
    return _pick(parsed, keys) or _pick(parsed.get("error"), keys)


FIELD_EXTRACTORS: list[Callable[[Any, tuple[str, ...]], str | None]] = [
    _direct_field,
    _structured_field,
    _embedded_field,
]


def extract_field(response: Any, keys: tuple[str, ...]) -> str | None:
    for extractor in FIELD_EXTRACTORS:
        found = extractor(response, keys)
        if found is not None:
            return found
    return None


def extract_task_id(response: Any) -> str | None:
    return extract_field(response, TASK_ID_KEYS)


def extract_log_path(response: Any) -> str | None:
    return extract_field(response, LOG_PATH_KEYS)


def is_terminal_status(status: str | None) -> bool:
    return bool(status) and status.strip().lower() in TERMINAL_TASK_STATUSES


class BackgroundRunCoordinator:
    def __init__(self, connections: ConnectionManager, invoker: TaskInvoker, settings: StataClientSettings):
        self._connections = connections
        self._invoker = invoker
        self._settings = settings

    async def run(self, run: RunState, start_tool: str, args: dict) -> Any:
        """Start ``start_tool`` in the background and return the final result payload."""
        connection = await self._connections.ensure_connection()
        connection = await self._invoker.ensure_capabilities(connection, [start_tool, TOOL_TASK_RESULT])
        can_tail = TOOL_READ_LOG in connection.capabilities

        sink = LineBufferedSink(run.on_log, suppressed=lambda: run.cancelled)
        tailer = LogTailer(
            self._slice_reader(connection),
            run,
            sink=sink,
            max_bytes=self._settings.log_read_max_bytes,
            poll_interval=self._settings.log_poll_interval_seconds,
            max_drain_reads=self._settings.max_drain_reads,
        )
        finished_ids: dict[str, str | None] = {}
        task_done = asyncio.Event()

        def begin_tail(path: str | None) -> None:
            if path and can_tail:
                tailer.start(path)
            elif path and run.log_path is None:
                run.log_path = path

        def handle(message: BusMessage) -> None:
            event = message.event
            if isinstance(event, LogPathEvent):
                begin_tail(event.path)
            elif isinstance(event, LogTextEvent):
                # Once a log file is being tailed it is the single source of output.
                if tailer.state == IDLE:
                    run.append_log(event.text)
                    sink.write(event.text)
            elif isinstance(event, ProgressEvent):
                if run.on_progress is not None and event.progress_token == run.progress_token:
                    try:
                        run.on_progress(event.progress, event.total, event.message)
                    except Exception:
                        logger.exception("Progress callback failed")
            elif isinstance(event, TaskDoneEvent):
                finished_ids[event.task_id] = event.status
                if run.task_id is not None and event.task_id == run.task_id:
                    task_done.set()

        queue = await self._connections.bus.subscribe(NOTIFICATIONS)

        def handle_pending() -> None:
            while not queue.empty():
                handle(queue.get_nowait())

        async def pump() -> None:
            while True:
                handle(await queue.get())

        pump_task = asyncio.create_task(pump())
        drained = False
        try:
            response = await self._invoker.invoke(
                connection,
                start_tool,
                args,
                progress_token=run.progress_token,
                cancel_token=run.cancel_token,
            )
            begin_tail(extract_log_path(response))
            task_id = extract_task_id(response)
            if task_id is None:
                logger.debug("%s returned no task id; treating response as final", start_tool)
                handle_pending()
                await tailer.drain()
                drained = True
                return response

            run.task_id = task_id
            logger.info("Background task %s started (log=%s)", task_id, run.log_path)
            if task_id in finished_ids:
                task_done.set()

            await run.cancel_token.run(self._await_completion(connection, run, task_done))
            handle_pending()
            await tailer.drain()
            drained = True
            run.cancel_token.raise_if_cancelled()
            return await self._invoker.invoke(
                connection,
                TOOL_TASK_RESULT,
                {"task_id": task_id},
                cancel_token=run.cancel_token,
            )
        except StataClientError as exc:
            if not exc.log_text:
                exc.log_text = run.log_buffer
            if exc.log_path is None:
                exc.log_path = run.log_path
            raise
        finally:
            pump_task.cancel()
            try:
                await pump_task
            except asyncio.CancelledError:
                pass
            await self._connections.bus.unsubscribe(NOTIFICATIONS, queue)
            if not drained:
                await tailer.close()

    async def _await_completion(self, connection: Connection, run: RunState, task_done: asyncio.Event) -> None:
        notified = asyncio.create_task(task_done.wait())
        pending: set[asyncio.Task] = {notified}
        if TOOL_TASK_STATUS in connection.capabilities:
            pending.add(asyncio.create_task(self._poll_until_terminal(connection, run)))
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if notified in done:
                    logger.debug("task_done notification for %s", run.task_id)
                    return
                for task in done:
                    if task.result() is not None:
                        return
                    logger.debug("Status polling stopped for %s; waiting for notification", run.task_id)
        finally:
            for task in pending:
                task.cancel()

    async def _poll_until_terminal(self, connection: Connection, run: RunState) -> str | None:
        """Poll until a terminal status; None when polling itself failed."""
        args = {
            "task_id": run.task_id,
            "wait": True,
            "timeout": self._settings.task_poll_timeout_seconds,
        }
        while True:
            try:
                response = await self._invoker.invoke(
                    connection, TOOL_TASK_STATUS, args, cancel_token=run.cancel_token, allow_refresh=False
                )
            except Cancelled:
                raise
            except Exception as exc:
                logger.warning("get_task_status failed for %s: %s", run.task_id, exc)
                return None
            status = extract_field(response, ("status", "state"))
            if is_terminal_status(status):
                return status
            await asyncio.sleep(self._settings.task_poll_interval_seconds)

    def _slice_reader(self, connection: Connection):
        async def read_slice(path: str, offset: int, max_bytes: int) -> LogSlice | None:
            response = await self._invoker.invoke(
                connection,
                TOOL_READ_LOG,
                {"path": path, "offset": offset, "max_bytes": max_bytes},
                allow_refresh=False,
            )
            for source in payload_sources(response):
                if "data" in source or "next_offset" in source:
                    return parse_log_slice(source)
            return None

        return read_slice

"""Scripted mcp-stata session built on the in-memory transport."""

from __future__ import annotations

import asyncio
from typing import Any

from tests.mocks.fake_transport import FakeTransport, FakeWorkerFactory, text_result

LOG_PATH = "/tmp/mcp_stata/run_1.smcl"


class FakeStataWorker:
    """Runs background tasks by appending log chunks on a timer.

    ``finish=False`` leaves the task running forever; ``notify_done=False``
    makes completion observable only through ``get_task_status``.
    """

    def __init__(
        self,
        *,
        log_chunks: list[str] | None = None,
        result: Any = None,
        task_id: str = "task-1",
        finish: bool = True,
        notify_done: bool = True,
        early_done: bool = False,
        log_path_in_response: bool = True,
        sync_result: Any = None,
        chunk_delay: float = 0.01,
        graphs: list[Any] | None = None,
        variables: list[Any] | None = None,
        tools: list[str] | None = None,
    ):
        self.log_chunks = list(log_chunks or [])
        self.result = result
        self.task_id = task_id
        self.finish = finish
        self.notify_done = notify_done
        self.early_done = early_done
        self.log_path_in_response = log_path_in_response
        self.sync_result = sync_result
        self.chunk_delay = chunk_delay
        self.graphs = list(graphs or [])
        self.variables = list(variables or [])
        self.log = ""
        self.finished = False
        tool_sets = [tools] if tools is not None else None
        self.factory = FakeWorkerFactory(self._handlers(), tool_sets=tool_sets)

    @property
    def transport(self) -> FakeTransport:
        return self.factory.current

    def _handlers(self) -> dict:
        return {
            "run_command_background": self._start,
            "run_do_file_background": self._start,
            "get_task_status": self._status,
            "get_task_result": self._result,
            "read_log": self._read_log,
            "break_session": lambda args: text_result({"ok": True}),
            "export_graphs_all": lambda args: text_result({"graphs": self.graphs}),
            "get_variable_list": lambda args: text_result({"variables": self.variables}),
        }

    async def _start(self, args: dict) -> dict:
        transport = self.transport
        if self.sync_result is not None:
            return text_result(self.sync_result)
        self.log = ""
        self.finished = False
        meta = transport.metas[-1] or {}
        if meta.get("progressToken") is not None:
            await transport.notify(
                "notifications/progress",
                {"progressToken": meta["progressToken"], "progress": 1, "total": 2, "message": "started"},
            )
        if not self.log_path_in_response:
            await transport.log_message({"event": "log_path", "path": LOG_PATH})
        if self.early_done:
            self.log = "".join(self.log_chunks)
            self.finished = True
            await transport.log_message({"event": "task_done", "task_id": self.task_id, "status": "done"})
        else:
            asyncio.create_task(self._produce(transport))
        payload = {"task_id": self.task_id, "status": "running"}
        if self.log_path_in_response:
            payload["log_path"] = LOG_PATH
        return text_result(payload)

    async def _produce(self, transport: FakeTransport) -> None:
        for chunk in self.log_chunks:
            await asyncio.sleep(self.chunk_delay)
            self.log += chunk
        if not self.finish:
            return
        self.finished = True
        if self.notify_done:
            await transport.log_message({"event": "task_done", "task_id": self.task_id, "status": "done"})

    async def _status(self, args: dict) -> dict:
        await asyncio.sleep(0.005)
        return text_result({"task_id": args["task_id"], "status": "done" if self.finished else "running"})

    def _result(self, args: dict) -> dict:
        payload = self.result if self.result is not None else {"rc": 0, "stdout": self.log}
        return text_result(payload)

    def _read_log(self, args: dict) -> dict:
        offset = args["offset"]
        data = self.log[offset:offset + args["max_bytes"]]
        return text_result(
            {"path": args["path"], "offset": offset, "next_offset": offset + len(data), "data": data}
        )

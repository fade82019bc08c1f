from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, TypeVar

from stata_mcp_client.config.defaults import (
    TOOL_RUN_COMMAND,
    TOOL_RUN_DO_FILE,
    TOOL_VARIABLE_LIST,
)
from stata_mcp_client.config.settings import StataClientSettings, get_settings
from stata_mcp_client.errors import RunTimeout, StataClientError
from stata_mcp_client.mcp.connection_manager import ConnectionManager, StatusListener, TransportFactory
from stata_mcp_client.schemas.results import Artifact, NormalizedResult, VariableInfo
from stata_mcp_client.schemas.run_state import LogCallback, ProgressCallback, RunState
from stata_mcp_client.services.artifact_resolver import ArtifactResolver
from stata_mcp_client.services.background_runner import BackgroundRunCoordinator
from stata_mcp_client.services.cancellation import CancellationToken
from stata_mcp_client.services.response_normalizer import ResultMeta, normalize, normalize_variable_list
from stata_mcp_client.services.run_queue import QueueEntry, RunQueue
from stata_mcp_client.services.task_invoker import TaskInvoker
from stata_mcp_client.utils.ids import generate_id
from stata_mcp_client.utils.path_utils import resolve_run_file_cwd
from stata_mcp_client.utils.time import now_ms

# Registers the stdio and http transport factories.
import stata_mcp_client.mcp.transports  # noqa: F401

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StataClient:
    """One session with the mcp-stata worker.

    Every public call goes through the run queue, so calls never overlap on
    the worker. Runs stream log lines through ``on_log`` while they execute
    and return a ``NormalizedResult`` once the log has been drained.
    """

    def __init__(
        self,
        settings: StataClientSettings | None = None,
        *,
        transport_factory: TransportFactory | None = None,
    ):
        self.settings = settings or get_settings()
        self.connections = ConnectionManager(self.settings, transport_factory=transport_factory)
        self.invoker = TaskInvoker(self.connections)
        self.coordinator = BackgroundRunCoordinator(self.connections, self.invoker, self.settings)
        self.artifacts = ArtifactResolver(
            self.invoker, self.connections, use_base64=self.settings.use_base64_graphs
        )
        self.queue = RunQueue(self.connections, self.invoker)

    @property
    def status(self) -> str:
        return self.connections.status

    def on_status_changed(self, listener: StatusListener) -> Callable[[], None]:
        return self.connections.on_status_changed(listener)

    async def run_command(
        self,
        code: str,
        *,
        on_log: LogCallback | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
        run_id: str | None = None,
        cwd: str | None = None,
        max_output_lines: int | None = None,
        include_graphs: bool = True,
        timeout: float | None = None,
    ) -> NormalizedResult:
        args: dict[str, Any] = {"code": code}
        self._apply_common_args(args, cwd=cwd, max_output_lines=max_output_lines)
        meta = ResultMeta(command=code, label="run_command", cwd=cwd)
        return await self._run(
            TOOL_RUN_COMMAND, args, meta,
            on_log=on_log, on_progress=on_progress, cancel_token=cancel_token,
            run_id=run_id, include_graphs=include_graphs, timeout=timeout,
        )

    async def run_do_file(
        self,
        path: str,
        *,
        on_log: LogCallback | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
        run_id: str | None = None,
        cwd: str | None = None,
        max_output_lines: int | None = None,
        include_graphs: bool = True,
        timeout: float | None = None,
    ) -> NormalizedResult:
        file_path = os.path.abspath(path)
        if cwd is None:
            cwd = resolve_run_file_cwd(
                file_path,
                template=self.settings.run_file_working_directory,
                workspace_root=self.settings.workspace_root,
            )
        # Absolute path so the worker finds the file; cwd so relative includes resolve.
        args: dict[str, Any] = {"path": file_path}
        self._apply_common_args(args, cwd=cwd, max_output_lines=max_output_lines)
        meta = ResultMeta(command=f'do "{file_path}"', label="run_file", cwd=cwd, file_path=file_path)
        return await self._run(
            TOOL_RUN_DO_FILE, args, meta,
            on_log=on_log, on_progress=on_progress, cancel_token=cancel_token,
            run_id=run_id, include_graphs=include_graphs, timeout=timeout,
        )

    async def list_graphs(self, *, base_dir: str | None = None) -> list[Artifact]:
        return await self._enqueue("list_graphs", lambda entry: self.artifacts.list_graphs(base_dir))

    async def fetch_graph(
        self, name: str, *, fmt: str | None = None, base_dir: str | None = None
    ) -> Artifact:
        return await self._enqueue("fetch_graph", lambda entry: self.artifacts.fetch(name, fmt, base_dir))

    async def export_all_graphs(self, *, base_dir: str | None = None) -> list[Artifact]:
        return await self._enqueue("export_all_graphs", lambda entry: self.artifacts.collect(base_dir))

    async def get_variable_list(self) -> list[VariableInfo]:
        async def work(entry: QueueEntry) -> list[VariableInfo]:
            connection = await self.connections.ensure_connection()
            response = await self.invoker.invoke(
                connection, TOOL_VARIABLE_LIST, {}, cancel_token=entry.token
            )
            return normalize_variable_list(response)

        return await self._enqueue("get_variable_list", work)

    async def cancel_all(self) -> bool:
        return await self.queue.cancel_all()

    async def cancel_run(self, run_id: str) -> bool:
        return await self.queue.cancel_run(run_id)

    async def dispose(self) -> None:
        await self.queue.cancel_all()
        await self.connections.close()

    def _apply_common_args(self, args: dict, *, cwd: str | None, max_output_lines: int | None) -> None:
        limit = max_output_lines if max_output_lines is not None else self.settings.max_output_lines
        if limit and limit > 0:
            args["max_output_lines"] = limit
        if cwd and cwd.strip():
            args["cwd"] = cwd

    async def _run(
        self,
        start_tool: str,
        args: dict,
        meta: ResultMeta,
        *,
        on_log: LogCallback | None,
        on_progress: ProgressCallback | None,
        cancel_token: CancellationToken | None,
        run_id: str | None,
        include_graphs: bool,
        timeout: float | None,
    ) -> NormalizedResult:
        async def work(entry: QueueEntry) -> NormalizedResult:
            run = RunState(
                label=meta.label or start_tool,
                run_id=entry.run_id,
                cancel_token=entry.token,
                progress_token=generate_id("p") if on_progress is not None else None,
                on_log=on_log,
                on_progress=on_progress,
                max_buffer_chars=self.settings.max_log_buffer_chars,
            )
            entry.run = run
            meta.started_at = now_ms()
            response = await self.coordinator.run(run, start_tool, args)
            meta.ended_at = now_ms()
            meta.log_text = run.log_buffer
            meta.log_path = run.log_path
            result = normalize(response, meta)
            if include_graphs:
                graphs = await self.artifacts.collect(meta.cwd)
                if graphs:
                    result.artifacts = graphs
                    if not result.graphArtifacts:
                        result.graphArtifacts = [g.model_dump() for g in graphs]
            return result

        effective = timeout if timeout is not None else self.settings.run_timeout_seconds
        return await self._enqueue(
            meta.label or start_tool, work, run_id=run_id, cancel_token=cancel_token, timeout=effective or 0
        )

    async def _enqueue(
        self,
        label: str,
        work: Callable[[QueueEntry], Awaitable[T]],
        *,
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> T:
        if timeout is None:
            timeout = self.settings.request_timeout_seconds

        async def timed(entry: QueueEntry) -> T:
            try:
                if not timeout:
                    return await entry.token.run(work(entry), f"{label} cancelled")
                return await entry.token.run(
                    asyncio.wait_for(work(entry), timeout=timeout), f"{label} cancelled"
                )
            except asyncio.TimeoutError as exc:
                await self.queue.cancel_run(entry.run_id)
                run = entry.run
                message = self.connections.diagnostics.enrich(f"{label} timed out after {int(timeout * 1000)}ms")
                raise RunTimeout(
                    message,
                    log_text=run.log_buffer if run else "",
                    log_path=run.log_path if run else None,
                ) from exc
            except StataClientError as exc:
                run = entry.run
                if run is not None:
                    exc.log_text = exc.log_text or run.log_buffer
                    exc.log_path = exc.log_path or run.log_path
                raise

        return await self.queue.submit(label, timed, run_id=run_id, cancel_token=cancel_token)


def configure_logging(level: int = logging.INFO) -> None:
    """Give the package logger its own stream handler unless one is attached."""
    package_logger = logging.getLogger("stata_mcp_client")
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s:     %(name)s - %(message)s"))
        package_logger.addHandler(handler)
    package_logger.setLevel(level)
    package_logger.propagate = False

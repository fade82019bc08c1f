"""MCP stdio transport: spawn the worker and speak JSON-RPC over stdin/stdout."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any

from stata_mcp_client.config.defaults import CLIENT_NAME, CLIENT_VERSION, MCP_PROTOCOL_VERSION
from stata_mcp_client.mcp.transport import (
    NotificationHandler,
    StderrHandler,
    TransportAborted,
    TransportError,
    raise_for_rpc_error,
)
from stata_mcp_client.services.cancellation import CancellationToken

logger = logging.getLogger(__name__)

# Graph exports can inline base64 payloads far larger than asyncio's 64 KiB default.
STREAM_LIMIT_BYTES = 16 * 1024 * 1024


class StdioTransport:
    """Connects to an MCP server via subprocess stdio using JSON-RPC 2.0.

    A reader task owns stdout: responses resolve the matching pending request,
    notifications go to the registered handler, so a long-running call never
    blocks log reads or status polls issued alongside it.
    """

    def __init__(self, config: dict[str, Any]) -> None:
        command = config.get("command") or "uvx"
        args_in = config.get("args")
        args = [str(a) for a in args_in] if isinstance(args_in, list) else []
        self._argv: list[str] = [command, *args]
        env_in = config.get("env")
        if isinstance(env_in, dict):
            self._env = dict(os.environ)
            for k, v in env_in.items():
                if k and v is not None:
                    self._env[str(k)] = str(v)
        else:
            self._env = None
        cwd = config.get("cwd")
        self._cwd = cwd if isinstance(cwd, str) and cwd else None
        self._process: asyncio.subprocess.Process | None = None
        self._request_id = 0
        self._init_done = False
        self._pending: dict[int, asyncio.Future] = {}
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._on_notification: NotificationHandler | None = None
        self._on_stderr: StderrHandler | None = None
        self.server_info: dict = {}

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def closed(self) -> bool:
        return self._process is None or self._process.returncode is not None

    def set_handlers(
        self,
        *,
        on_notification: NotificationHandler | None = None,
        on_stderr: StderrHandler | None = None,
    ) -> None:
        self._on_notification = on_notification
        self._on_stderr = on_stderr

    async def connect(self) -> None:
        """Spawn subprocess and complete MCP initialize handshake."""
        if self._process is not None and self._process.returncode is None and self._init_done:
            return
        kwargs: dict[str, Any] = {
            "stdin": asyncio.subprocess.PIPE,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "limit": STREAM_LIMIT_BYTES,
        }
        if self._env is not None:
            kwargs["env"] = self._env
        if self._cwd is not None:
            kwargs["cwd"] = self._cwd
        try:
            self._process = await asyncio.create_subprocess_exec(*self._argv, **kwargs)
        except OSError as exc:
            message = f"Failed to start {self._argv[0]}: {exc}"
            if self._on_stderr:
                self._on_stderr(message)
            raise TransportError(message) from exc
        if self._process.stdin is None or self._process.stdout is None:
            raise TransportError("Subprocess stdin/stdout not available")
        logger.info("Started MCP worker %s (pid=%s)", " ".join(self._argv), self._process.pid)
        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        try:
            init_result = await self._send_request(
                "initialize",
                {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
                },
            )
            if init_result is None:
                raise TransportError("Initialize failed: no response")
            self.server_info = init_result.get("serverInfo") or {} if isinstance(init_result, dict) else {}
            await self._send_notification("notifications/initialized")
            self._init_done = True
        except BaseException:
            await self.close()
            raise

    async def request(
        self,
        method: str,
        params: dict | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> dict:
        """Send JSON-RPC request and return the result payload."""
        if not self._init_done:
            await self.connect()
        result = await self._send_request(method, params or {}, cancel_token=cancel_token)
        if result is None:
            return {}
        return result if isinstance(result, dict) else {}

    async def close(self) -> None:
        """Terminate the subprocess."""
        process = self._process
        self._process = None
        self._init_done = False
        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
        self._reader_task = None
        self._stderr_task = None
        self._fail_pending(TransportError("Transport closed"))
        if process is None:
            return
        try:
            if process.stdin is not None:
                process.stdin.close()
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=2.0)
        except (asyncio.TimeoutError, ProcessLookupError):
            try:
                process.kill()
            except ProcessLookupError:
                pass

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def _write(self, msg: dict) -> None:
        if not self._process or not self._process.stdin:
            raise TransportError("Transport is not connected")
        line = json.dumps(msg) + "\n"
        try:
            self._process.stdin.write(line.encode())
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise TransportError(f"Worker pipe closed: {exc}") from exc

    async def _send_notification(self, method: str, params: dict | None = None) -> None:
        msg: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            msg["params"] = params
        await self._write(msg)

    async def _send_request(
        self,
        method: str,
        params: dict,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> dict | None:
        if cancel_token is not None and cancel_token.cancelled:
            raise TransportAborted(f"Request {method} aborted before send")
        req_id = self._next_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        try:
            await self._write({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params})
            if cancel_token is None:
                resp = await future
            else:
                waiter = asyncio.ensure_future(cancel_token.wait())
                try:
                    done, _ = await asyncio.wait({future, waiter}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    waiter.cancel()
                if future not in done:
                    reason = cancel_token.reason or "cancelled"
                    try:
                        await self._send_notification(
                            "notifications/cancelled", {"requestId": req_id, "reason": reason}
                        )
                    except TransportError:
                        logger.debug("Could not deliver cancel for request %s", req_id)
                    raise TransportAborted(f"Request {method} aborted: {reason}")
                resp = future.result()
        finally:
            self._pending.pop(req_id, None)
            if not future.done():
                future.cancel()
        raise_for_rpc_error(resp)
        return resp.get("result")

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    async def _read_stdout(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        try:
            while True:
                out_line = await process.stdout.readline()
                if not out_line:
                    break
                text = out_line.decode(errors="replace").strip()
                if not text:
                    continue
                try:
                    msg = json.loads(text)
                except json.JSONDecodeError:
                    logger.debug("Non-protocol stdout from worker: %s", text[:200])
                    continue
                if isinstance(msg, dict):
                    await self._dispatch(msg)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("MCP stdout reader failed")
        finally:
            self._fail_pending(TransportError("Worker process exited"))

    async def _dispatch(self, msg: dict) -> None:
        if "id" in msg and ("result" in msg or "error" in msg) and "method" not in msg:
            future = self._pending.get(msg.get("id"))
            if future is not None and not future.done():
                future.set_result(msg)
            return
        method = msg.get("method")
        if not isinstance(method, str):
            return
        if "id" in msg:
            await self._answer_server_request(msg)
            return
        if self._on_notification is None:
            return
        try:
            await self._on_notification(method, msg.get("params") or {})
        except Exception:
            logger.exception("Notification handler failed for %s", method)

    async def _answer_server_request(self, msg: dict) -> None:
        if msg.get("method") == "ping":
            reply: dict[str, Any] = {"jsonrpc": "2.0", "id": msg["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": msg["id"],
                "error": {"code": -32601, "message": f"Method not found: {msg.get('method')}"},
            }
        try:
            await self._write(reply)
        except TransportError:
            logger.debug("Could not answer server request %s", msg.get("method"))

    async def _read_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            text = line.decode(errors="replace").rstrip()
            if text.strip() and self._on_stderr is not None:
                self._on_stderr(text)

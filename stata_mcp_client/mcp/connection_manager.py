from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable

from stata_mcp_client.config.server_config import load_launch_config
from stata_mcp_client.config.settings import StataClientSettings, get_settings
from stata_mcp_client.errors import ConnectionFailed, ConnectionTimeout, full_error_message
from stata_mcp_client.mcp.diagnostics import DiagnosticsBuffer
from stata_mcp_client.mcp.protocol_models import (
    MCPToolDescriptor,
    parse_notification,
    parse_tools_list_response,
)
from stata_mcp_client.mcp.transport import MCPTransport
from stata_mcp_client.services.cancellation import CancellationToken
from stata_mcp_client.services.event_bus import NOTIFICATIONS, EventBus

logger = logging.getLogger(__name__)

STATUS_CONNECTING = "connecting"
STATUS_CONNECTED = "connected"
STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_ERROR = "error"
STATUS_DISCONNECTED = "disconnected"

# Transports are registered at import time (stdio, http); tests can override via register_transport_factory
_transport_factory_registry: dict[str, Callable[[dict], MCPTransport]] = {}

TransportFactory = Callable[[dict], MCPTransport]
StatusListener = Callable[[str], None]


class ToolCapabilitySet:
    """Tool names advertised by the worker.

    Logical names resolve to an exact match first, then to an advertised name
    ending in ``_<logical>`` (servers may prefix their tools).
    """

    def __init__(self, names: Iterable[str] = ()):
        self._names: list[str] = []
        for name in names:
            if name and name not in self._names:
                self._names.append(name)

    @classmethod
    def from_tools(cls, tools: list[MCPToolDescriptor]) -> ToolCapabilitySet:
        return cls(t.name for t in tools)

    @property
    def names(self) -> list[str]:
        return sorted(self._names)

    def __contains__(self, logical_name: object) -> bool:
        return isinstance(logical_name, str) and self.resolve(logical_name) is not None

    def __len__(self) -> int:
        return len(self._names)

    def resolve(self, logical_name: str) -> str | None:
        if logical_name in self._names:
            return logical_name
        suffix = f"_{logical_name}"
        for name in self._names:
            if name.endswith(suffix):
                return name
        return None

    def missing(self, logical_names: Iterable[str]) -> list[str]:
        return [name for name in logical_names if self.resolve(name) is None]


class Connection:
    """A live transport plus the capabilities discovered on it."""

    def __init__(self, transport: MCPTransport, tools: list[MCPToolDescriptor], generation: int):
        self.transport = transport
        self.tools = tools
        self.capabilities = ToolCapabilitySet.from_tools(tools)
        self.generation = generation

    @property
    def closed(self) -> bool:
        return bool(getattr(self.transport, "closed", False))

    async def call_tool(
        self, name: str, arguments: dict, *, cancel_token: CancellationToken | None = None
    ) -> dict:
        return await self.transport.request(
            "tools/call", {"name": name, "arguments": arguments}, cancel_token=cancel_token
        )

    async def request(
        self, method: str, params: dict | None = None, *, cancel_token: CancellationToken | None = None
    ) -> dict:
        return await self.transport.request(method, params, cancel_token=cancel_token)

    async def close(self) -> None:
        try:
            await self.transport.close()
        except Exception:
            logger.warning("Error closing MCP transport", exc_info=True)


class ConnectionManager:
    """Owns the single worker connection.

    Creation is shared: concurrent ``ensure_connection`` callers await the same
    in-flight task. The event bus outlives individual connections so
    subscribers keep receiving notifications across a forced refresh.
    """

    def __init__(
        self,
        settings: StataClientSettings | None = None,
        *,
        transport_factory: TransportFactory | None = None,
        event_bus: EventBus | None = None,
    ):
        self._settings = settings or get_settings()
        self._transport_factory = transport_factory
        self.bus = event_bus or EventBus()
        self.diagnostics = DiagnosticsBuffer()
        self._connection: Connection | None = None
        self._creating: asyncio.Task | None = None
        self._generation = 0
        self._status = STATUS_DISCONNECTED
        # Set by the run queue while a run is active; a reconnect mid-run keeps "running".
        self.busy = False
        self._listeners: list[StatusListener] = []

    @staticmethod
    def register_transport_factory(name: str, factory: TransportFactory) -> None:
        """Register a transport factory. name is e.g. 'stdio', 'http'."""
        _transport_factory_registry[name.lower().strip()] = factory

    @property
    def status(self) -> str:
        return self._status

    @property
    def connection(self) -> Connection | None:
        return self._connection

    @property
    def generation(self) -> int:
        return self._generation

    def on_status_changed(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def set_status(self, status: str) -> None:
        if status == self._status:
            return
        self._status = status
        logger.debug("mcp-stata status -> %s", status)
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Status listener failed")

    async def ensure_connection(self) -> Connection:
        if self._connection is not None:
            if not self._connection.closed:
                return self._connection
            logger.info("mcp-stata worker exited; reconnecting")
            stale = self._connection
            self._connection = None
            await stale.close()
        return await self._await_creation(refresh=False)

    async def force_refresh(self) -> Connection:
        """Recreate the connection with the default launcher, keeping configured env."""
        logger.info("Forcing mcp-stata refresh")
        if self._creating is not None and not self._creating.done():
            try:
                await asyncio.shield(self._creating)
            except Exception:
                logger.debug("In-flight connection failed before refresh", exc_info=True)
        await self._discard()
        return await self._await_creation(refresh=True)

    async def close(self) -> None:
        creating = self._creating
        self._creating = None
        if creating is not None and not creating.done():
            creating.cancel()
            try:
                await creating
            except (asyncio.CancelledError, Exception):
                logger.debug("Connection attempt abandoned on close", exc_info=True)
        await self._discard()
        await self.set_status(STATUS_DISCONNECTED)

    async def _discard(self) -> None:
        connection = self._connection
        self._connection = None
        if connection is not None:
            await connection.close()

    async def _await_creation(self, *, refresh: bool) -> Connection:
        task = self._creating
        if task is None or task.done():
            task = asyncio.create_task(self._create(refresh=refresh))
            self._creating = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._creating is task:
                self._creating = None

    def _build_transport(self, *, refresh: bool) -> MCPTransport:
        key = (self._settings.transport or "stdio").lower().strip()
        if key == "streamable-http":
            key = "http"
        if key == "http":
            config = {"url": self._settings.http_url, "timeout": self._settings.request_timeout_seconds}
        else:
            config = load_launch_config(self._settings, ignore_command_args=refresh).to_transport_config()
        if self._transport_factory is not None:
            return self._transport_factory(config)
        factory = _transport_factory_registry.get(key)
        if factory is not None:
            return factory(config)
        raise NotImplementedError(f"No transport factory registered for: {key}")

    async def _open(self, transport: MCPTransport) -> list[MCPToolDescriptor]:
        await transport.connect()
        raw = await transport.request("tools/list", {})
        return parse_tools_list_response(raw)

    async def _create(self, *, refresh: bool) -> Connection:
        await self.set_status(STATUS_CONNECTING)
        try:
            transport = self._build_transport(refresh=refresh)
        except Exception as exc:
            await self.set_status(STATUS_ERROR)
            raise ConnectionFailed(self.diagnostics.enrich(f"Failed to start mcp-stata: {exc}")) from exc
        transport.set_handlers(on_notification=self._on_notification, on_stderr=self._on_stderr)
        timeout = self._settings.connect_timeout_seconds
        try:
            tools = await asyncio.wait_for(self._open(transport), timeout=timeout)
        except asyncio.TimeoutError as exc:
            await self._safe_close(transport)
            await self.set_status(STATUS_ERROR)
            raise ConnectionTimeout(
                self.diagnostics.enrich(f"Timed out connecting to mcp-stata after {timeout:g}s")
            ) from exc
        except Exception as exc:
            await self._safe_close(transport)
            await self.set_status(STATUS_ERROR)
            logger.warning("mcp-stata connection failed: %s", exc)
            logger.debug("Connection failure detail:\n%s", full_error_message(exc))
            raise ConnectionFailed(self.diagnostics.enrich(f"Failed to connect to mcp-stata: {exc}")) from exc

        self._generation += 1
        connection = Connection(transport, tools, self._generation)
        self._connection = connection
        self.diagnostics.clear()
        pid = getattr(transport, "pid", None)
        logger.info("mcp-stata connected (pid=%s)", pid if pid is not None else "unknown")
        if len(connection.capabilities):
            logger.info("mcp-stata available tools: %s", ", ".join(connection.capabilities.names))
        await self.set_status(STATUS_RUNNING if self.busy else STATUS_CONNECTED)
        return connection

    @staticmethod
    async def _safe_close(transport: MCPTransport) -> None:
        try:
            await transport.close()
        except Exception:
            logger.debug("Error closing partially-opened transport", exc_info=True)

    async def _on_notification(self, method: str, params: dict) -> None:
        event = parse_notification(method, params)
        if event is None:
            logger.debug("Ignoring notification %s", method)
            return
        await self.bus.publish(NOTIFICATIONS, event)

    def _on_stderr(self, line: str) -> None:
        logger.debug("[mcp-stata stderr] %s", line)
        self.diagnostics.record(line)

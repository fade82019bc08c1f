from __future__ import annotations

import logging
from typing import Iterable

from stata_mcp_client.errors import CapabilityMissing, Cancelled, StataClientError, ToolCallFailed
from stata_mcp_client.mcp.connection_manager import (
    STATUS_CONNECTED,
    STATUS_ERROR,
    Connection,
    ConnectionManager,
)
from stata_mcp_client.mcp.transport import TransportAborted
from stata_mcp_client.services.cancellation import CancellationToken

logger = logging.getLogger(__name__)

_ABORT_MARKERS = ("cancelled", "canceled", "abort")


def is_abort_error(exc: BaseException) -> bool:
    """True for transport aborts and errors whose kind or message says so."""
    if isinstance(exc, (TransportAborted, Cancelled)):
        return True
    if "abort" in type(exc).__name__.lower():
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _ABORT_MARKERS)


class TaskInvoker:
    """Issues single tool calls against a capability-checked connection."""

    def __init__(self, connections: ConnectionManager):
        self._connections = connections

    async def ensure_capabilities(
        self, connection: Connection, required: Iterable[str]
    ) -> Connection:
        """Return a connection advertising every required tool.

        Escalates to at most one forced refresh before failing.
        """
        required = list(required)
        attempted_refresh = False
        while True:
            missing = connection.capabilities.missing(required)
            if not missing:
                return connection
            if attempted_refresh:
                raise CapabilityMissing(missing, connection.capabilities.names)
            logger.warning("mcp-stata missing tools %s; forcing refresh", ", ".join(missing))
            connection = await self._connections.force_refresh()
            attempted_refresh = True

    async def invoke(
        self,
        connection: Connection,
        operation_name: str,
        args: dict | None = None,
        *,
        progress_token: str | None = None,
        cancel_token: CancellationToken | None = None,
        allow_refresh: bool = True,
    ) -> dict:
        if allow_refresh:
            connection = await self.ensure_capabilities(connection, [operation_name])
        tool_name = connection.capabilities.resolve(operation_name)
        if tool_name is None:
            raise CapabilityMissing([operation_name], connection.capabilities.names)
        arguments = args or {}
        try:
            if progress_token is not None:
                params = {
                    "name": tool_name,
                    "arguments": arguments,
                    "_meta": {"progressToken": progress_token},
                }
                return await connection.request("tools/call", params, cancel_token=cancel_token)
            return await connection.call_tool(tool_name, arguments, cancel_token=cancel_token)
        except StataClientError as exc:
            if isinstance(exc, Cancelled):
                await self._connections.set_status(STATUS_CONNECTED)
            raise
        except Exception as exc:
            if is_abort_error(exc) or (cancel_token is not None and cancel_token.cancelled):
                await self._connections.set_status(STATUS_CONNECTED)
                raise Cancelled("Request cancelled") from exc
            await self._connections.set_status(STATUS_ERROR)
            detail = str(exc) or type(exc).__name__
            logger.warning("MCP tool %s failed: %s", operation_name, detail)
            raise ToolCallFailed(operation_name, detail) from exc

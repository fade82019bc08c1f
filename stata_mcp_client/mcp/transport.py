"""MCP transport protocol and transport-level errors."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

from stata_mcp_client.services.cancellation import CancellationToken

NotificationHandler = Callable[[str, dict], Awaitable[None]]
StderrHandler = Callable[[str], None]


class TransportError(RuntimeError):
    """The transport failed to deliver a request or lost its peer."""


class TransportAborted(TransportError):
    """A request was aborted by its cancellation token."""


class JsonRpcError(TransportError):
    """The peer answered a request with a JSON-RPC error object."""

    def __init__(self, message: str, *, code: int | None = None, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(message)


class MCPTransport(Protocol):
    """Protocol for MCP transport implementations."""

    @property
    def closed(self) -> bool: ...

    def set_handlers(
        self,
        *,
        on_notification: NotificationHandler | None = None,
        on_stderr: StderrHandler | None = None,
    ) -> None: ...

    async def connect(self) -> None: ...

    async def request(
        self,
        method: str,
        params: dict | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> dict: ...

    async def close(self) -> None: ...


def raise_for_rpc_error(resp: dict) -> None:
    if "error" not in resp:
        return
    err = resp["error"]
    if isinstance(err, dict):
        raise JsonRpcError(str(err.get("message", err)), code=err.get("code"), data=err.get("data"))
    raise JsonRpcError(str(err))

"""MCP HTTP transport: POST JSON-RPC to a URL, receive JSON or SSE-framed responses."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

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

SESSION_HEADER = "Mcp-Session-Id"


class HttpTransport:
    """Connects to an MCP server via HTTP POST (JSON-RPC request/response).

    Streamable-HTTP servers may answer with an SSE body that carries log and
    progress notifications ahead of the response; those are dispatched to the
    notification handler in order before the response is returned.
    """

    def __init__(self, config: dict[str, Any]) -> None:
        url = config.get("url") or ""
        self._url = url.rstrip("/")
        headers = config.get("headers")
        self._headers = dict(headers) if isinstance(headers, dict) else {}
        timeout = config.get("timeout")
        self._timeout = float(timeout) if isinstance(timeout, (int, float)) else 60.0
        self._request_id = 0
        self._init_done = False
        self._closed = False
        self._session_id: str | None = None
        self._on_notification: NotificationHandler | None = None
        self._on_stderr: StderrHandler | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def set_handlers(
        self,
        *,
        on_notification: NotificationHandler | None = None,
        on_stderr: StderrHandler | None = None,
    ) -> None:
        self._on_notification = on_notification
        self._on_stderr = on_stderr

    async def connect(self) -> None:
        """Complete MCP initialize handshake."""
        if self._init_done:
            return
        if not self._url:
            raise TransportError("HTTP transport requires a url")
        self._closed = False
        init_result = await self._send_request(
            "initialize",
            {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
            },
        )
        if not init_result:
            raise TransportError("Initialize failed: no response")
        await self._send_notification("notifications/initialized")
        self._init_done = True

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
        """Forget the session; HTTP holds no process."""
        self._init_done = False
        self._closed = True
        self._session_id = None

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def _send_notification(self, method: str, params: dict | None = None) -> None:
        msg: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            msg["params"] = params
        await self._post(msg, allow_empty_response=True)

    async def _send_request(
        self,
        method: str,
        params: dict,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> dict | None:
        req_id = self._next_id()
        msg = {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params}
        if cancel_token is None:
            resp = await self._post(msg)
        else:
            if cancel_token.cancelled:
                raise TransportAborted(f"Request {method} aborted before send")
            try:
                resp = await cancel_token.run(self._post(msg))
            except TransportError:
                raise
            except Exception as exc:
                if not cancel_token.cancelled:
                    raise
                reason = cancel_token.reason or "cancelled"
                try:
                    await self._send_notification(
                        "notifications/cancelled", {"requestId": req_id, "reason": reason}
                    )
                except TransportError:
                    logger.debug("Could not deliver cancel for request %s", req_id)
                raise TransportAborted(f"Request {method} aborted: {reason}") from exc
        if resp is None:
            return None
        raise_for_rpc_error(resp)
        return resp.get("result")

    async def _post(self, payload: dict, *, allow_empty_response: bool = False) -> dict | None:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **self._headers,
        }
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, json=payload, headers=headers)
                response.raise_for_status()
                session_id = response.headers.get(SESSION_HEADER)
                if session_id:
                    self._session_id = session_id
                body = response.text or ""
        except httpx.HTTPStatusError as e:
            body = (e.response.text or "")[:300]
            raise TransportError(f"HTTP {e.response.status_code} from {self._url}: {body}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP request to {self._url} failed: {e}") from e

        if not body.strip():
            if allow_empty_response:
                return None
            logger.warning("MCP HTTP empty response: url=%s status=%s", self._url, response.status_code)
            raise TransportError(f"Empty response from {self._url} (status {response.status_code})")
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as e:
            messages = self._extract_messages_from_sse(body)
            sse_payload = await self._route_sse_messages(messages, payload.get("id"))
            if sse_payload is not None:
                return sse_payload
            if allow_empty_response and messages:
                return None
            preview = body[:500].replace("\n", " ")
            if len(body) > 500:
                preview += "..."
            logger.warning(
                "MCP HTTP invalid JSON: url=%s status=%s body_len=%d preview=%s",
                self._url, response.status_code, len(body), preview[:100],
            )
            raise TransportError(
                f"Invalid JSON from server (status {response.status_code}). Body: {preview}"
            ) from e
        return parsed if isinstance(parsed, dict) else None

    async def _route_sse_messages(self, messages: list[dict], request_id: Any) -> dict | None:
        response: dict | None = None
        for msg in messages:
            method = msg.get("method")
            if isinstance(method, str) and "id" not in msg:
                if self._on_notification is None:
                    continue
                try:
                    await self._on_notification(method, msg.get("params") or {})
                except Exception:
                    logger.exception("Notification handler failed for %s", method)
                continue
            if response is None and ("result" in msg or "error" in msg):
                if request_id is None or msg.get("id") == request_id:
                    response = msg
        return response

    @staticmethod
    def _extract_messages_from_sse(body: str) -> list[dict]:
        # SSE-framed MCP responses look like:
        # event: message
        # data: {"jsonrpc":"2.0", ...}
        normalized = body.replace("\r\n", "\n").replace("\r", "\n")
        messages: list[dict] = []
        for block in normalized.split("\n\n"):
            if not block.strip():
                continue
            data_lines = [line[5:].lstrip() for line in block.split("\n") if line.startswith("data:")]
            if not data_lines:
                continue
            payload = "\n".join(data_lines).strip()
            if not payload or payload == "[DONE]":
                continue
            try:
                parsed = json.loads(payload)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                messages.append(parsed)
        return messages

    @classmethod
    def _extract_json_from_sse(cls, body: str) -> dict | None:
        """First JSON-RPC message in an SSE body, if any."""
        messages = cls._extract_messages_from_sse(body)
        return messages[0] if messages else None

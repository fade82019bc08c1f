"""MCP transport adapters: stdio (local uvx worker) and http (remote)."""

from stata_mcp_client.mcp.connection_manager import ConnectionManager
from stata_mcp_client.mcp.transports.http_transport import HttpTransport
from stata_mcp_client.mcp.transports.stdio import StdioTransport

ConnectionManager.register_transport_factory("stdio", StdioTransport)
ConnectionManager.register_transport_factory("http", HttpTransport)

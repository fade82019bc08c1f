"""Static defaults for the mcp-stata worker and client."""

MCP_PACKAGE_NAME = "mcp-stata"
MCP_SERVER_ID = "mcp_stata"
MCP_PACKAGE_SPEC = f"{MCP_PACKAGE_NAME}@latest"
MCP_PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "stata-mcp-client"
CLIENT_VERSION = "0.1.0"

# Logical tool names; advertised names may carry a server prefix.
TOOL_RUN_COMMAND = "run_command_background"
TOOL_RUN_DO_FILE = "run_do_file_background"
TOOL_TASK_STATUS = "get_task_status"
TOOL_TASK_RESULT = "get_task_result"
TOOL_READ_LOG = "read_log"
TOOL_BREAK_SESSION = "break_session"
TOOL_LIST_GRAPHS = "list_graphs"
TOOL_EXPORT_GRAPH = "export_graph"
TOOL_EXPORT_GRAPHS_ALL = "export_graphs_all"
TOOL_VARIABLE_LIST = "get_variable_list"

TERMINAL_TASK_STATUSES = frozenset(
    {"done", "completed", "complete", "finished", "failed", "error", "cancelled", "canceled"}
)

DEFAULT_CONNECT_TIMEOUT_SECONDS = 60.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 45.0
DEFAULT_SETUP_TIMEOUT_SECONDS = 60
DEFAULT_LOG_READ_MAX_BYTES = 65536
DEFAULT_LOG_POLL_INTERVAL_SECONDS = 0.2
DEFAULT_MAX_DRAIN_READS = 200
DEFAULT_MAX_LOG_BUFFER_CHARS = 500_000
DEFAULT_TASK_POLL_TIMEOUT_SECONDS = 5.0
DEFAULT_TASK_POLL_INTERVAL_SECONDS = 0.5
RECENT_DIAGNOSTICS_LIMIT = 10

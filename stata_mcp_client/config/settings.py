from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from stata_mcp_client.config.defaults import (
    DEFAULT_CONNECT_TIMEOUT_SECONDS,
    DEFAULT_LOG_POLL_INTERVAL_SECONDS,
    DEFAULT_LOG_READ_MAX_BYTES,
    DEFAULT_MAX_DRAIN_READS,
    DEFAULT_MAX_LOG_BUFFER_CHARS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_SETUP_TIMEOUT_SECONDS,
    DEFAULT_TASK_POLL_INTERVAL_SECONDS,
    DEFAULT_TASK_POLL_TIMEOUT_SECONDS,
    MCP_PACKAGE_NAME,
    MCP_PACKAGE_SPEC,
    MCP_SERVER_ID,
)


class StataClientSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STATA_MCP_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    transport: str = "stdio"
    http_url: str = ""
    uvx_command: str = "uvx"
    package_name: str = MCP_PACKAGE_NAME
    package_spec: str = MCP_PACKAGE_SPEC
    server_id: str = MCP_SERVER_ID
    workspace_root: str | None = None
    mcp_config_paths: list[str] = []
    setup_timeout_seconds: int = DEFAULT_SETUP_TIMEOUT_SECONDS
    connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS
    request_timeout_seconds: float | None = DEFAULT_REQUEST_TIMEOUT_SECONDS
    run_timeout_seconds: float | None = None
    log_read_max_bytes: int = DEFAULT_LOG_READ_MAX_BYTES
    log_poll_interval_seconds: float = DEFAULT_LOG_POLL_INTERVAL_SECONDS
    max_drain_reads: int = DEFAULT_MAX_DRAIN_READS
    max_log_buffer_chars: int = DEFAULT_MAX_LOG_BUFFER_CHARS
    task_poll_timeout_seconds: float = DEFAULT_TASK_POLL_TIMEOUT_SECONDS
    task_poll_interval_seconds: float = DEFAULT_TASK_POLL_INTERVAL_SECONDS
    max_output_lines: int = 0
    run_file_working_directory: str = ""
    use_base64_graphs: bool = False


@lru_cache(maxsize=1)
def get_settings() -> StataClientSettings:
    return StataClientSettings()

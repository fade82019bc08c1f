from stata_mcp_client.utils.ids import generate_id
from stata_mcp_client.utils.json_helpers import (
    extract_text,
    flatten_content,
    try_parse_json,
)
from stata_mcp_client.utils.time import now_ms, utc_now_iso

__all__ = [
    "generate_id",
    "extract_text",
    "flatten_content",
    "try_parse_json",
    "now_ms",
    "utc_now_iso",
]

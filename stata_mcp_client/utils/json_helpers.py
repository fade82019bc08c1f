import json
from typing import Any


def try_parse_json(text: Any) -> Any | None:
    """Parse text that looks like a JSON object or array; None otherwise."""
    if not isinstance(text, str):
        return None
    trimmed = text.strip()
    if not trimmed.startswith(("{", "[")):
        return None
    try:
        return json.loads(trimmed)
    except json.JSONDecodeError:
        return None


def flatten_content(content: Any) -> str:
    """Join the text of MCP content items with newlines."""
    if not isinstance(content, list):
        return ""
    lines: list[str] = []
    for item in content:
        if isinstance(item, str):
            lines.append(item)
        elif isinstance(item, dict) and isinstance(item.get("text"), str):
            lines.append(item["text"])
    return "\n".join(lines)


def extract_text(response: Any) -> str:
    """Return the primary text carried by a tool response."""
    if isinstance(response, str):
        return response
    if not isinstance(response, dict):
        return ""
    if isinstance(response.get("text"), str):
        return response["text"]
    flattened = flatten_content(response.get("content"))
    if flattened.strip():
        return flattened
    structured = response.get("structuredContent")
    if isinstance(structured, dict) and isinstance(structured.get("result"), str):
        return structured["result"]
    return ""


def stringify_safe(obj: Any) -> str:
    try:
        return json.dumps(obj)
    except (TypeError, ValueError):
        return repr(obj)

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Union

from stata_mcp_client.utils.json_helpers import try_parse_json


@dataclass
class MCPToolDescriptor:
    name: str
    description: str | None
    input_schema: dict


@dataclass
class LogTextEvent:
    text: str


@dataclass
class LogPathEvent:
    path: str


@dataclass
class TaskDoneEvent:
    task_id: str
    status: str | None = None


@dataclass
class ProgressEvent:
    progress_token: str
    progress: float | None
    total: float | None = None
    message: str | None = None


NotificationEvent = Union[LogTextEvent, LogPathEvent, TaskDoneEvent, ProgressEvent]


@dataclass
class LogSlice:
    data: str
    next_offset: int | None


def parse_tools_list_response(payload: dict) -> list[MCPToolDescriptor]:
    tools_raw = payload.get("tools", [])
    if not isinstance(tools_raw, list):
        return []
    tools: list[MCPToolDescriptor] = []
    for item in tools_raw:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name", "")).strip()
        if not name:
            continue
        schema = item.get("inputSchema")
        if not isinstance(schema, dict):
            schema = item.get("input_schema") if isinstance(item.get("input_schema"), dict) else {}
        description = item.get("description")
        tools.append(
            MCPToolDescriptor(
                name=name,
                description=description if isinstance(description, str) else None,
                input_schema=schema,
            )
        )
    return tools


def _event_from_object(obj: dict) -> NotificationEvent | None:
    event = obj.get("event")
    if event == "log_path":
        # "path" is authoritative; the legacy "smcl_path" only fills in when it is absent.
        path = obj.get("path")
        if not (isinstance(path, str) and path.strip()):
            path = obj.get("smcl_path")
        if isinstance(path, str) and path.strip():
            return LogPathEvent(path=path)
        return None
    if event == "task_done":
        task_id = obj.get("task_id")
        if task_id is None or task_id == "":
            return None
        status = obj.get("status")
        return TaskDoneEvent(task_id=str(task_id), status=status if isinstance(status, str) else None)
    data = obj.get("data")
    if isinstance(data, str) and data:
        return LogTextEvent(text=data)
    return None


def parse_logging_message(params: dict) -> NotificationEvent | None:
    data = params.get("data")
    if isinstance(data, dict):
        return _event_from_object(data)
    if data is None:
        return None
    text = data if isinstance(data, str) else json.dumps(data)
    if not text:
        return None
    parsed = try_parse_json(text)
    if isinstance(parsed, dict) and "event" in parsed:
        return _event_from_object(parsed)
    return LogTextEvent(text=text)


def parse_progress(params: dict) -> ProgressEvent | None:
    token = params.get("progressToken")
    if token is None:
        return None

    def _num(value) -> float | None:
        return float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None

    message = params.get("message")
    return ProgressEvent(
        progress_token=str(token),
        progress=_num(params.get("progress")),
        total=_num(params.get("total")),
        message=message if isinstance(message, str) else None,
    )


def parse_notification(method: str, params: dict | None) -> NotificationEvent | None:
    """Map a JSON-RPC notification onto a typed event; None for anything else."""
    params = params if isinstance(params, dict) else {}
    if method == "notifications/message":
        return parse_logging_message(params)
    if method == "notifications/progress":
        return parse_progress(params)
    return None


def parse_log_slice(payload: object) -> LogSlice | None:
    """Interpret a read_log payload of the form {data, next_offset}."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    next_offset = payload.get("next_offset")
    if isinstance(next_offset, bool) or not isinstance(next_offset, (int, float)):
        next_offset = None
    return LogSlice(
        data=data if isinstance(data, str) else ("" if data is None else str(data)),
        next_offset=int(next_offset) if next_offset is not None else None,
    )

import pytest

from stata_mcp_client.mcp.protocol_models import (
    LogPathEvent,
    LogSlice,
    LogTextEvent,
    ProgressEvent,
    TaskDoneEvent,
    parse_log_slice,
    parse_notification,
    parse_tools_list_response,
)


def test_parse_tools_list_skips_unnamed_entries() -> None:
    tools = parse_tools_list_response(
        {
            "tools": [
                {"name": "read_log", "description": "Read a log slice", "inputSchema": {"type": "object"}},
                {"name": "  "},
                "not a tool",
                {"name": "break_session", "input_schema": {"type": "object"}},
            ]
        }
    )

    assert [t.name for t in tools] == ["read_log", "break_session"]
    assert tools[0].description == "Read a log slice"
    assert tools[1].input_schema == {"type": "object"}
    assert parse_tools_list_response({"tools": "nope"}) == []


@pytest.mark.parametrize(
    ("data", "expected"),
    [
        ({"event": "log_path", "path": "/tmp/new.smcl", "smcl_path": "/tmp/old.smcl"}, LogPathEvent("/tmp/new.smcl")),
        ({"event": "log_path", "smcl_path": "/tmp/old.smcl"}, LogPathEvent("/tmp/old.smcl")),
        ('{"event": "log_path", "path": "/tmp/a.smcl"}', LogPathEvent("/tmp/a.smcl")),
        ({"event": "task_done", "task_id": 7, "status": "done"}, TaskDoneEvent("7", "done")),
        ({"event": "task_done"}, None),
        ({"data": "inner text"}, LogTextEvent("inner text")),
        (". display 1", LogTextEvent(". display 1")),
        ("{not json", LogTextEvent("{not json")),
        ('{"no_event": true}', LogTextEvent('{"no_event": true}')),
        ("", None),
        (None, None),
    ],
)
def test_parse_logging_message(data, expected) -> None:
    assert parse_notification("notifications/message", {"level": "info", "data": data}) == expected


def test_parse_progress_notification() -> None:
    event = parse_notification(
        "notifications/progress",
        {"progressToken": "p_1", "progress": 3, "total": 10, "message": "Running regression"},
    )

    assert event == ProgressEvent(progress_token="p_1", progress=3.0, total=10.0, message="Running regression")
    assert parse_notification("notifications/progress", {"progress": 1}) is None


def test_unrelated_notifications_are_ignored() -> None:
    assert parse_notification("notifications/tools/list_changed", {}) is None
    assert parse_notification("notifications/message", None) is None


def test_parse_log_slice() -> None:
    assert parse_log_slice({"data": "abc", "next_offset": 3}) == LogSlice("abc", 3)
    assert parse_log_slice({"data": "abc"}) == LogSlice("abc", None)
    assert parse_log_slice({"data": None, "next_offset": True}) == LogSlice("", None)
    assert parse_log_slice("abc") is None

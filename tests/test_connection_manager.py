import asyncio

import pytest

from stata_mcp_client.errors import CapabilityMissing, Cancelled, ConnectionFailed, ConnectionTimeout
from stata_mcp_client.mcp.connection_manager import ConnectionManager, ToolCapabilitySet
from stata_mcp_client.mcp.diagnostics import MISSING_PACKAGE_HINT, DiagnosticsBuffer
from stata_mcp_client.mcp.protocol_models import LogPathEvent, TaskDoneEvent
from stata_mcp_client.services.cancellation import CancellationToken
from stata_mcp_client.services.event_bus import NOTIFICATIONS
from stata_mcp_client.services.task_invoker import TaskInvoker, is_abort_error
from tests.mocks.fake_transport import DEFAULT_TOOLS, FakeTransport, FakeWorkerFactory
from tests.mocks.settings import make_settings


def test_capability_set_resolves_prefixed_names() -> None:
    caps = ToolCapabilitySet(["mcp_stata_read_log", "run_command_background", "read_log_v2"])

    assert caps.resolve("run_command_background") == "run_command_background"
    assert caps.resolve("read_log") == "mcp_stata_read_log"
    assert "read_log" in caps
    assert caps.missing(["read_log", "break_session"]) == ["break_session"]


def test_missing_tool_triggers_one_refresh_then_succeeds(settings) -> None:
    async def scenario() -> None:
        without = [t for t in DEFAULT_TOOLS if t != "get_task_result"]
        factory = FakeWorkerFactory(tool_sets=[without, DEFAULT_TOOLS])
        connections = ConnectionManager(settings, transport_factory=factory)
        invoker = TaskInvoker(connections)

        connection = await connections.ensure_connection()
        refreshed = await invoker.ensure_capabilities(
            connection, ["run_command_background", "get_task_result"]
        )

        assert len(factory.created) == 2
        assert factory.created[0].closed is True
        assert refreshed is connections.connection
        assert refreshed.generation == 2

    asyncio.run(scenario())


def test_tool_still_missing_after_refresh_raises(settings) -> None:
    async def scenario() -> None:
        factory = FakeWorkerFactory(tool_sets=[["run_command_background"]])
        connections = ConnectionManager(settings, transport_factory=factory)
        invoker = TaskInvoker(connections)
        connection = await connections.ensure_connection()

        with pytest.raises(CapabilityMissing) as excinfo:
            await invoker.ensure_capabilities(connection, ["run_command_background", "read_log"])

        assert len(factory.created) == 2
        message = str(excinfo.value)
        assert "Required tools still missing after refresh" in message
        assert "Required tools: read_log" in message
        assert "Available tools: run_command_background" in message

    asyncio.run(scenario())


def test_refresh_uses_default_launcher_and_keeps_env(tmp_path) -> None:
    async def scenario() -> None:
        config = tmp_path / "mcp.json"
        config.write_text(
            """{
              // workspace server
              "servers": {
                "mcp_stata": {
                  "command": "/opt/bin/mcp-stata",
                  "args": ["--verbose"],
                  "env": {"STATA_PATH": "/usr/local/stata18"},
                },
              },
            }""",
            encoding="utf-8",
        )
        settings = make_settings(mcp_config_paths=[str(config)])
        factory = FakeWorkerFactory()
        connections = ConnectionManager(settings, transport_factory=factory)

        await connections.ensure_connection()
        await connections.force_refresh()

        first, second = factory.configs
        assert first["command"] == "/opt/bin/mcp-stata"
        assert first["args"] == ["--verbose"]
        assert second["command"] == "uvx"
        assert second["args"] == ["--refresh", "--from", "mcp-stata@latest", "mcp-stata"]
        assert second["env"]["STATA_PATH"] == "/usr/local/stata18"
        assert second["env"]["STATA_SETUP_TIMEOUT"] == "60"

    asyncio.run(scenario())


def test_connect_timeout_closes_transport(settings) -> None:
    async def scenario() -> None:
        factory = FakeWorkerFactory(connect_delay=1.0)
        connections = ConnectionManager(
            settings.model_copy(update={"connect_timeout_seconds": 0.05}), transport_factory=factory
        )

        with pytest.raises(ConnectionTimeout) as excinfo:
            await connections.ensure_connection()

        assert "Timed out connecting" in str(excinfo.value)
        assert factory.current.closed is True
        assert connections.status == "error"
        assert connections.connection is None

    asyncio.run(scenario())


@pytest.mark.parametrize(
    ("stderr", "expected"),
    [
        ("ModuleNotFoundError: No module named 'pystata'", "missing a required Python package"),
        ("Error: Stata not found; set STATA_PATH", "could not find a Stata installation"),
    ],
)
def test_connect_failure_is_enriched_with_diagnostics(settings, stderr, expected) -> None:
    async def scenario() -> None:
        factory = FakeWorkerFactory(
            connect_error=RuntimeError("worker exited with code 1"), stderr_lines=[stderr]
        )
        connections = ConnectionManager(settings, transport_factory=factory)

        with pytest.raises(ConnectionFailed) as excinfo:
            await connections.ensure_connection()

        message = str(excinfo.value)
        assert "worker exited with code 1" in message
        assert expected in message
        assert stderr in message

    asyncio.run(scenario())


def test_diagnostics_keep_recent_lines_until_success() -> None:
    buffer = DiagnosticsBuffer(limit=3)
    for line in ["one", "", "two", "three", "No module named 'pystata'"]:
        buffer.record(line)

    assert buffer.lines() == ["two", "three", "No module named 'pystata'"]
    assert buffer.hints() == [MISSING_PACKAGE_HINT]
    assert buffer.enrich("boom").endswith("(recent stderr: two | three | No module named 'pystata')")

    buffer.record("Stata initialized")
    assert buffer.lines() == []
    assert buffer.enrich("boom") == "boom"


def test_concurrent_callers_share_one_creation(settings) -> None:
    async def scenario() -> None:
        factory = FakeWorkerFactory(connect_delay=0.05)
        connections = ConnectionManager(settings, transport_factory=factory)

        results = await asyncio.gather(*(connections.ensure_connection() for _ in range(5)))

        assert len(factory.created) == 1
        assert all(r is results[0] for r in results)

    asyncio.run(scenario())


def test_closed_connection_is_recreated(settings) -> None:
    async def scenario() -> None:
        factory = FakeWorkerFactory()
        connections = ConnectionManager(settings, transport_factory=factory)
        first = await connections.ensure_connection()
        await first.transport.close()

        second = await connections.ensure_connection()

        assert second is not first
        assert len(factory.created) == 2

    asyncio.run(scenario())


def test_registered_factory_selected_by_settings_name(settings) -> None:
    async def scenario() -> None:
        connections = ConnectionManager(settings)
        connection = await connections.ensure_connection()

        assert isinstance(connection.transport, FakeTransport)
        assert connections.status == "connected"
        await connections.close()
        assert connections.status == "disconnected"
        assert connection.transport.closed is True

    asyncio.run(scenario())


def test_unknown_transport_name_fails_to_connect() -> None:
    async def scenario() -> None:
        connections = ConnectionManager(make_settings(transport="carrier-pigeon"))

        with pytest.raises(ConnectionFailed, match="No transport factory registered"):
            await connections.ensure_connection()

    asyncio.run(scenario())


def test_notifications_are_published_as_events(settings) -> None:
    async def scenario() -> None:
        factory = FakeWorkerFactory()
        connections = ConnectionManager(settings, transport_factory=factory)
        queue = await connections.bus.subscribe(NOTIFICATIONS)

        await connections.ensure_connection()
        await factory.current.log_message({"event": "log_path", "path": "/tmp/a.smcl"})
        await factory.current.log_message('{"event":"task_done","task_id":"t1","status":"done"}')
        await factory.current.notify("notifications/resources/list_changed", {})

        events = []
        while not queue.empty():
            events.append(queue.get_nowait().event)
        assert events == [LogPathEvent(path="/tmp/a.smcl"), TaskDoneEvent(task_id="t1", status="done")]

    asyncio.run(scenario())


def test_cancelled_call_reports_connected_and_raises_cancelled(settings) -> None:
    async def scenario() -> None:
        release = asyncio.Event()

        async def slow(args):
            await release.wait()
            return {"content": []}

        factory = FakeWorkerFactory({"get_variable_list": slow})
        connections = ConnectionManager(settings, transport_factory=factory)
        invoker = TaskInvoker(connections)
        connection = await connections.ensure_connection()
        token = CancellationToken()

        call = asyncio.create_task(
            invoker.invoke(connection, "get_variable_list", {}, cancel_token=token)
        )
        await asyncio.sleep(0.01)
        token.cancel("user cancelled")

        with pytest.raises(Cancelled):
            await call
        assert connections.status == "connected"
        assert factory.current.notifications_sent == [
            ("notifications/cancelled", {"reason": "user cancelled"})
        ]

    asyncio.run(scenario())


def test_task_cancellation_is_not_reclassified(settings) -> None:
    async def scenario() -> None:
        release = asyncio.Event()

        async def slow(args):
            await release.wait()
            return {"content": []}

        factory = FakeWorkerFactory({"get_variable_list": slow})
        connections = ConnectionManager(settings, transport_factory=factory)
        invoker = TaskInvoker(connections)
        connection = await connections.ensure_connection()

        call = asyncio.create_task(invoker.invoke(connection, "get_variable_list", {}))
        await asyncio.sleep(0.01)
        call.cancel()

        with pytest.raises(asyncio.CancelledError):
            await call
        assert connections.status == "connected"

    asyncio.run(scenario())


def test_failed_call_wraps_error_with_logical_name(settings) -> None:
    async def scenario() -> None:
        def broken(args):
            raise RuntimeError("pipe closed")

        factory = FakeWorkerFactory({"get_variable_list": broken})
        connections = ConnectionManager(settings, transport_factory=factory)
        invoker = TaskInvoker(connections)
        connection = await connections.ensure_connection()

        with pytest.raises(Exception) as excinfo:
            await invoker.invoke(connection, "get_variable_list")

        assert str(excinfo.value) == "MCP tool get_variable_list failed: pipe closed"
        assert connections.status == "error"

    asyncio.run(scenario())


def test_progress_token_travels_in_meta(settings) -> None:
    async def scenario() -> None:
        factory = FakeWorkerFactory({"get_variable_list": lambda args: {"content": []}})
        connections = ConnectionManager(settings, transport_factory=factory)
        invoker = TaskInvoker(connections)
        connection = await connections.ensure_connection()

        await invoker.invoke(connection, "get_variable_list", {}, progress_token="p_1")
        await invoker.invoke(connection, "get_variable_list", {})

        assert factory.current.metas == [{"progressToken": "p_1"}, None]

    asyncio.run(scenario())


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (RuntimeError("Request was cancelled"), True),
        (type("AbortError", (Exception,), {})("stop"), True),
        (RuntimeError("Operation aborted by peer"), True),
        (RuntimeError("pipe closed"), False),
    ],
)
def test_is_abort_error(exc, expected) -> None:
    assert is_abort_error(exc) is expected


def test_status_changes_reach_listeners_not_the_bus(settings) -> None:
    async def scenario() -> None:
        connections = ConnectionManager(settings, transport_factory=FakeWorkerFactory())
        queue = await connections.bus.subscribe(NOTIFICATIONS)
        statuses: list[str] = []
        connections.on_status_changed(statuses.append)

        await connections.set_status("running")
        await connections.set_status("running")
        await connections.set_status("connected")

        assert statuses == ["running", "connected"]
        assert queue.empty()

    asyncio.run(scenario())

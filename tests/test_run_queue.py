import asyncio

import pytest

from stata_mcp_client.errors import Cancelled
from stata_mcp_client.mcp.connection_manager import ConnectionManager
from stata_mcp_client.schemas.run_state import RunState
from stata_mcp_client.services.cancellation import CancellationToken
from stata_mcp_client.services.run_queue import RunQueue
from stata_mcp_client.services.task_invoker import TaskInvoker
from tests.mocks.fake_transport import FakeWorkerFactory


def _queue(settings, handlers=None) -> tuple[RunQueue, ConnectionManager, FakeWorkerFactory]:
    factory = FakeWorkerFactory(handlers or {"break_session": lambda args: {"content": []}})
    connections = ConnectionManager(settings, transport_factory=factory)
    return RunQueue(connections, TaskInvoker(connections)), connections, factory


def test_second_submission_waits_for_the_first(settings) -> None:
    async def scenario() -> None:
        queue, _, _ = _queue(settings)
        order: list[str] = []
        release = asyncio.Event()

        async def first(entry):
            order.append("first:start")
            await release.wait()
            order.append("first:end")
            return "a"

        async def second(entry):
            order.append("second:start")
            return "b"

        task_a = asyncio.create_task(queue.submit("first", first))
        await asyncio.sleep(0.01)
        task_b = asyncio.create_task(queue.submit("second", second))
        await asyncio.sleep(0.01)

        assert order == ["first:start"]
        assert queue.pending_count == 1
        assert queue.active is not None and queue.active.label == "first"

        release.set()
        assert await asyncio.gather(task_a, task_b) == ["a", "b"]
        assert order == ["first:start", "first:end", "second:start"]
        assert queue.active is None

    asyncio.run(scenario())


def test_submissions_run_in_fifo_order(settings) -> None:
    async def scenario() -> None:
        queue, _, _ = _queue(settings)
        started: list[int] = []
        gate = asyncio.Event()

        def make(index: int):
            async def work(entry):
                started.append(index)
                if index == 0:
                    await gate.wait()
                return index

            return work

        tasks = []
        for index in range(5):
            tasks.append(asyncio.create_task(queue.submit(f"run{index}", make(index))))
            await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(*tasks)

        assert started == [0, 1, 2, 3, 4]

    asyncio.run(scenario())


def test_cancel_all_rejects_queued_entries(settings) -> None:
    async def scenario() -> None:
        queue, _, _ = _queue(settings)
        seen: list[str] = []

        async def active(entry):
            await entry.token.wait()
            entry.token.raise_if_cancelled("active cancelled")

        async def queued(entry):
            seen.append("queued ran")

        task_a = asyncio.create_task(queue.submit("active", active))
        await asyncio.sleep(0.01)
        task_b = asyncio.create_task(queue.submit("queued", queued))
        await asyncio.sleep(0.01)

        assert await queue.cancel_all() is True
        results = await asyncio.gather(task_a, task_b, return_exceptions=True)

        assert all(isinstance(r, Cancelled) for r in results)
        assert seen == []
        assert await queue.cancel_all() is False

    asyncio.run(scenario())


def test_caller_token_cancels_submission(settings) -> None:
    async def scenario() -> None:
        queue, _, _ = _queue(settings)
        token = CancellationToken()
        token.cancel("caller gave up")

        async def work(entry):
            return "never"

        with pytest.raises(Cancelled):
            await queue.submit("run_command", work, cancel_token=token)

    asyncio.run(scenario())


def test_cancel_run_sends_break_session_once(settings) -> None:
    async def scenario() -> None:
        queue, connections, factory = _queue(settings)
        await connections.ensure_connection()

        async def work(entry):
            entry.run = RunState(label="run_command", run_id=entry.run_id, cancel_token=entry.token, task_id="task-7")
            await entry.token.wait()
            entry.token.raise_if_cancelled()

        task = asyncio.create_task(queue.submit("run_command", work, run_id="run-1"))
        await asyncio.sleep(0.01)

        assert await queue.cancel_run("run-1") is True
        assert await queue.cancel_run("run-1") is False
        await queue.cancel_all()
        with pytest.raises(Cancelled):
            await task

        assert factory.current.called("break_session") == [{"task_id": "task-7"}]
        assert await queue.cancel_run("run-1") is False

    asyncio.run(scenario())


def test_status_reflects_queue_state(settings) -> None:
    async def scenario() -> None:
        queue, connections, _ = _queue(settings)
        statuses: list[str] = []
        connections.on_status_changed(statuses.append)

        async def work(entry):
            await connections.ensure_connection()
            return "ok"

        async def failing(entry):
            raise RuntimeError("worker crashed")

        assert await queue.submit("run_command", work) == "ok"
        assert connections.status == "connected"
        assert "running" in statuses

        with pytest.raises(RuntimeError):
            await queue.submit("run_command", failing)
        assert connections.status == "error"

    asyncio.run(scenario())

"""Tests for the session engine against the fake CLI."""

import asyncio
import contextlib
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio

from ..engine import Engine, _Query
from ..env import EngineConfig
from ..errors import (
    ControlRequestError,
    EngineError,
    EngineStoppedError,
    InterruptedByUserError,
    ProcessExitError,
    ProcessIOError,
    ProcessSpawnError,
    QueryInProgressError,
)
from ..supervisor import ProcessHandle, ProcessSupervisor
from ..types import AssistantMessage, ResultMessage, SystemMessage, UserMessage


async def collect(engine, prompt):
    events = []
    async with contextlib.aclosing(engine.query(prompt)) as stream:
        async for event in stream:
            events.append(event)
    return events


@pytest_asyncio.fixture
async def engine(config):
    engine = Engine(config=config)
    try:
        yield engine
    finally:
        await engine.stop()


class TestQueryBuffer:
    """Test the push-to-pull bridge of a single query."""

    @pytest.mark.asyncio
    async def test_buffered_items_delivered_in_order(self):
        query = _Query("p")
        query.push("a")
        query.push("b")
        assert await query.next() == "a"
        assert await query.next() == "b"

    @pytest.mark.asyncio
    async def test_waiting_consumer_resolved_directly(self):
        query = _Query("p")
        waiter = asyncio.ensure_future(query.next())
        await asyncio.sleep(0)
        query.push("a")
        assert await waiter == "a"

    @pytest.mark.asyncio
    async def test_only_first_failure_is_delivered(self):
        query = _Query("p")
        query.push("a")
        query.fail(InterruptedByUserError())
        query.fail(ProcessExitError(1))
        assert await query.next() == "a"
        assert isinstance(await query.next(), InterruptedByUserError)
        assert query.failed


class TestQuery:
    """Test a plain query/response exchange."""

    @pytest.mark.asyncio
    async def test_ping(self, engine):
        events = await collect(engine, "ping")

        assert isinstance(events[0], SystemMessage)
        assert events[0].is_init
        assert isinstance(events[1], AssistantMessage)
        assert events[1].text == "pong"
        assert isinstance(events[-1], ResultMessage)
        assert events[-1].is_success
        assert sum(isinstance(e, ResultMessage) for e in events) == 1
        assert engine.continuation_id == events[0].session_id != ""
        assert not engine.is_query_active

    @pytest.mark.asyncio
    async def test_spawn_is_lazy(self, engine):
        assert not engine.is_running
        assert engine.pid is None
        await collect(engine, "ping")
        assert engine.is_running

    @pytest.mark.asyncio
    async def test_process_reused_between_queries(self, engine):
        await collect(engine, "ping")
        pid = engine.pid
        events = await collect(engine, "ping again")

        assert engine.pid == pid
        # Only the first query of a process sees the init
        assert not any(isinstance(e, SystemMessage) for e in events)
        assert events[-1].raw["turn_session_id"] == engine.continuation_id

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, engine):
        events = await collect(engine, "tool")
        tool_uses = [u for e in events if isinstance(e, AssistantMessage) for u in e.tool_uses]
        tool_results = [r for e in events if isinstance(e, UserMessage) for r in e.tool_results]
        assert tool_uses[0].id == tool_results[0].tool_use_id == "toolu_1"

    @pytest.mark.asyncio
    async def test_malformed_line_does_not_end_query(self, engine):
        events = await collect(engine, "garbage")
        assert events[-1].result == "still here"
        assert engine.is_running

    @pytest.mark.asyncio
    async def test_misshapen_lines_do_not_end_session(self, engine):
        events = await collect(engine, "misshapen")
        assert [e.text for e in events if isinstance(e, AssistantMessage)] == ["still here"]
        assert events[-1].is_success
        assert engine.error is None
        assert engine.is_running

        pid = engine.pid
        assert (await collect(engine, "ping"))[-1].is_success
        assert engine.pid == pid

    @pytest.mark.asyncio
    async def test_control_response_not_streamed(self, engine):
        events = await collect(engine, "stray-control")
        assert all(e.type != "control_response" for e in events)
        assert isinstance(events[-1], ResultMessage)

    @pytest.mark.asyncio
    async def test_later_init_does_not_change_continuation_id(self, engine):
        events = await collect(engine, "dup-init")
        inits = [e for e in events if isinstance(e, SystemMessage)]

        assert [i.session_id for i in inits][1] == "other-session"
        assert engine.continuation_id == inits[0].session_id

    @pytest.mark.asyncio
    async def test_break_after_result_keeps_process(self, engine):
        async with contextlib.aclosing(engine.query("ping")) as stream:
            async for event in stream:
                if isinstance(event, ResultMessage):
                    break
        pid = engine.pid

        await collect(engine, "ping")
        assert not engine.needs_recreation
        assert engine.pid == pid

    @pytest.mark.asyncio
    async def test_async_context_manager(self, config):
        async with Engine(config=config) as engine:
            assert engine.is_running
            events = await collect(engine, "ping")
            assert events[-1].is_success
        assert not engine.is_running


class TestSingleFlight:
    """A second concurrent query is a usage error."""

    @pytest.mark.asyncio
    async def test_second_query_rejected_without_disturbing_first(self, engine):
        first = engine.query("long task")
        try:
            assert isinstance(await first.__anext__(), SystemMessage)

            with pytest.raises(QueryInProgressError):
                await collect(engine, "ping")

            assert engine.is_query_active
            event = await first.__anext__()
            assert isinstance(event, AssistantMessage)
            assert event.text.startswith("chunk")
        finally:
            await first.aclose()

    @pytest.mark.asyncio
    async def test_usage_error_before_spawn(self, engine):
        first = engine.query("long task")
        try:
            await first.__anext__()
            pid = engine.pid
            with pytest.raises(QueryInProgressError):
                await engine.query("other").__anext__()
            assert engine.pid == pid
        finally:
            await first.aclose()


class TestInterrupt:
    """Interrupt kills the process; the next query resumes the session."""

    @pytest.mark.asyncio
    async def test_interrupt_then_query_succeeds(self, engine):
        received = []
        with pytest.raises(InterruptedByUserError):
            async with contextlib.aclosing(engine.query("long task")) as stream:
                async for event in stream:
                    received.append(event)
                    if len(received) == 2:
                        engine.interrupt()

        assert len(received) >= 2
        session = engine.continuation_id
        assert session
        assert engine.needs_recreation
        assert not engine.is_query_active

        events = await collect(engine, "ping2")
        assert events[-1].is_success
        assert engine.continuation_id == session
        assert events[0].session_id == session
        assert events[0].raw["argv"][-2:] == ["--resume", session]

    @pytest.mark.asyncio
    async def test_interrupt_respawns_process(self, engine):
        await collect(engine, "ping")
        old_pid = engine.pid
        engine.interrupt()
        await collect(engine, "ping")
        assert engine.pid != old_pid

    @pytest.mark.asyncio
    async def test_interrupt_without_query(self, engine):
        engine.interrupt()
        engine.interrupt()
        events = await collect(engine, "ping")
        assert events[-1].is_success
        assert not engine.needs_recreation

    @pytest.mark.asyncio
    async def test_interrupt_from_another_task(self, engine):
        async def consume():
            return await collect(engine, "long task")

        task = asyncio.create_task(consume())
        while not engine.is_query_active or not engine.continuation_id:
            await asyncio.sleep(0.01)
        engine.interrupt()

        with pytest.raises(InterruptedByUserError):
            await task
        events = await collect(engine, "ping")
        assert events[-1].is_success

    @pytest.mark.asyncio
    async def test_session_state_survives_interrupt(self, engine):
        await collect(engine, "remember blue")
        engine.interrupt()
        events = await collect(engine, "recall")
        assert events[-1].result == "blue"

    @pytest.mark.asyncio
    async def test_new_process_id_does_not_replace_continuation(self, config, monkeypatch):
        engine = Engine(config=config)
        try:
            await collect(engine, "ping")
            session = engine.continuation_id

            monkeypatch.setenv("FAKE_CLI_FRESH_SESSION", "1")
            engine.interrupt()
            events = await collect(engine, "ping")

            assert events[0].session_id != session
            assert events[0].raw["argv"][-2:] == ["--resume", session]
            assert engine.continuation_id == session
        finally:
            await engine.stop()


class TestAbandonment:
    """Leaving a query early must not leak its output into the next one."""

    @pytest.mark.asyncio
    async def test_abandoned_query_forces_recreation(self, engine):
        async with contextlib.aclosing(engine.query("long task")) as stream:
            async for event in stream:
                if isinstance(event, AssistantMessage):
                    break

        assert not engine.is_query_active
        assert engine.needs_recreation

        events = await collect(engine, "ping")
        assert [e.text for e in events if isinstance(e, AssistantMessage)] == ["pong"]


class TestAbnormalExit:
    """An unplanned exit is surfaced and needs an explicit recreate()."""

    @pytest.mark.asyncio
    async def test_crash_surfaces_exit_error(self, engine):
        with pytest.raises(ProcessExitError) as exc_info:
            await collect(engine, "crash")

        assert exc_info.value.exit_code == 3
        assert "fatal: boom" in exc_info.value.stderr
        assert "fatal: boom" in engine.last_stderr
        assert isinstance(engine.error, ProcessExitError)

    @pytest.mark.asyncio
    async def test_no_silent_recovery_after_crash(self, engine):
        with pytest.raises(ProcessExitError):
            await collect(engine, "crash")
        with pytest.raises(ProcessExitError):
            await collect(engine, "ping")

    @pytest.mark.asyncio
    async def test_recreate_after_crash(self, engine):
        await collect(engine, "ping")
        session = engine.continuation_id
        with pytest.raises(ProcessExitError):
            await collect(engine, "crash")

        engine.recreate()
        events = await collect(engine, "ping")
        assert events[-1].is_success
        assert engine.error is None
        assert engine.continuation_id == session

    @pytest.mark.asyncio
    async def test_clean_exit_without_result_is_an_error(self, engine):
        with pytest.raises(ProcessExitError) as exc_info:
            await collect(engine, "exit")
        assert exc_info.value.exit_code == 0

    @pytest.mark.asyncio
    async def test_recreate_rejected_while_querying(self, engine):
        stream = engine.query("long task")
        try:
            await stream.__anext__()
            with pytest.raises(QueryInProgressError):
                engine.recreate()
        finally:
            await stream.aclose()


class TestSpawnFailure:
    """A missing executable is fatal for the engine."""

    @pytest.mark.asyncio
    async def test_spawn_error_is_fatal(self, tmp_path):
        engine = Engine(config=EngineConfig(cli_path=str(tmp_path / "missing")))
        try:
            with pytest.raises(ProcessSpawnError):
                await collect(engine, "ping")
            assert not engine.is_query_active
            with pytest.raises(ProcessSpawnError):
                await collect(engine, "ping")
            with pytest.raises(ProcessSpawnError):
                engine.recreate()
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_start_raises(self, tmp_path):
        engine = Engine(config=EngineConfig(cli_path=str(tmp_path / "missing")))
        with pytest.raises(ProcessSpawnError):
            await engine.start()
        await engine.stop()


class TestControlRequests:
    """Test the acknowledged control request path."""

    @pytest.mark.asyncio
    async def test_interrupt_acknowledged(self, engine):
        await engine.start()
        response = await engine.send_control_request("interrupt", timeout=5)
        assert response.is_success
        assert response.request_id.startswith("req_")
        assert engine.is_running

    @pytest.mark.asyncio
    async def test_error_response_raises(self, engine):
        await engine.start()
        with pytest.raises(ControlRequestError, match="unsupported"):
            await engine.send_control_request("rewind", timeout=5)

    @pytest.mark.asyncio
    async def test_requires_live_process(self, engine):
        with pytest.raises(EngineError):
            await engine.send_control_request()

    @pytest.mark.asyncio
    async def test_control_request_after_exit(self, engine):
        await engine.start()
        stream = engine.query("crash")
        with pytest.raises(ProcessExitError):
            async for _ in stream:
                pass
        with pytest.raises(ProcessExitError):
            await engine.send_control_request(timeout=5)


class TestStop:
    """Test shutdown."""

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, config):
        engine = Engine(config=config)
        await collect(engine, "ping")
        await engine.stop()
        await engine.stop()
        assert not engine.is_running

    @pytest.mark.asyncio
    async def test_query_after_stop(self, config):
        engine = Engine(config=config)
        await engine.stop()
        with pytest.raises(EngineStoppedError):
            await collect(engine, "ping")

    @pytest.mark.asyncio
    async def test_stop_fails_active_query(self, engine):
        stream = engine.query("long task")
        await stream.__anext__()
        await engine.stop()
        with pytest.raises(EngineStoppedError):
            async for _ in stream:
                pass


def make_mock_handle(write_error=None):
    process = Mock()
    process.pid = 4242
    process.returncode = None
    process.stdin = Mock()
    process.stdin.is_closing.return_value = False
    process.stdin.drain = AsyncMock()
    if write_error is not None:
        process.stdin.write.side_effect = write_error
    process.stdout.read = AsyncMock(return_value=b"")
    process.stderr.read = AsyncMock(return_value=b"")
    process.wait = AsyncMock(return_value=1)
    return ProcessHandle(process=process, args=("claude",))


def make_mock_supervisor(handle):
    supervisor = Mock(spec=ProcessSupervisor)
    supervisor.spawn = AsyncMock(return_value=handle)
    supervisor.terminate = AsyncMock(return_value=0)
    return supervisor


class TestWithMockSupervisor:
    """Engine behavior with the process layer mocked out."""

    @pytest.mark.asyncio
    async def test_spawn_receives_continuation_id(self):
        supervisor = make_mock_supervisor(make_mock_handle())
        engine = Engine(["--model", "x"], {"K": "V"}, cwd="/w", continuation_id="sid-0", supervisor=supervisor)

        await engine.start()
        await engine.stop()

        supervisor.spawn.assert_awaited_once_with(
            ("--model", "x"), {"K": "V"}, cwd="/w", continuation_id="sid-0"
        )
        supervisor.terminate.assert_awaited_once()
        assert engine.continuation_id == "sid-0"

    @pytest.mark.asyncio
    async def test_write_to_dead_process_raises_io_error(self):
        supervisor = make_mock_supervisor(make_mock_handle(write_error=BrokenPipeError()))
        engine = Engine(supervisor=supervisor)
        try:
            with pytest.raises(ProcessIOError):
                await collect(engine, "ping")
            assert not engine.is_query_active
            assert not engine.needs_recreation
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_closed_stdin_raises_io_error(self):
        handle = make_mock_handle()
        handle.process.stdin.is_closing.return_value = True
        engine = Engine(supervisor=make_mock_supervisor(handle))
        try:
            with pytest.raises(ProcessIOError, match="closed"):
                await collect(engine, "ping")
            handle.process.stdin.write.assert_not_called()
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_interrupt_signals_current_process(self):
        handle = make_mock_handle()
        supervisor = make_mock_supervisor(handle)
        engine = Engine(supervisor=supervisor)
        try:
            await engine.start()
            engine.interrupt()
            supervisor.signal_terminate.assert_called_once_with(handle)
            assert engine.needs_recreation
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_stop_during_spawn_terminates_new_process(self):
        handle = make_mock_handle()
        supervisor = make_mock_supervisor(handle)
        release = asyncio.Event()

        async def slow_spawn(*args, **kwargs):
            await release.wait()
            return handle

        supervisor.spawn = AsyncMock(side_effect=slow_spawn)
        engine = Engine(supervisor=supervisor)

        task = asyncio.create_task(engine.start())
        await asyncio.sleep(0)
        await engine.stop()
        release.set()

        with pytest.raises(EngineStoppedError):
            await task
        supervisor.terminate.assert_awaited_once_with(handle)
        assert not engine.is_running
        assert engine.pid is None

    @pytest.mark.asyncio
    async def test_reader_failure_is_traced(self, tmp_path, monkeypatch):
        trace_file = tmp_path / "trace.log"
        monkeypatch.setenv("CCWRAP_TRACE", str(trace_file))
        handle = make_mock_handle()
        handle.process.stdout.read = AsyncMock(side_effect=RuntimeError("read broke"))
        engine = Engine(supervisor=make_mock_supervisor(handle))
        try:
            await engine.start()
            await engine._io_task
            assert isinstance(engine.error, ProcessIOError)
        finally:
            await engine.stop()

        content = trace_file.read_text()
        assert "pump failed" in content
        assert "RuntimeError: read broke" in content


class TestStopRace:
    """Stopping while the first process is still starting."""

    @pytest.mark.asyncio
    async def test_stop_while_starting_leaves_no_process(self, config):
        engine = Engine(config=config)
        task = asyncio.create_task(engine.start())
        await asyncio.sleep(0)
        await engine.stop()

        with pytest.raises(EngineStoppedError):
            await task
        assert not engine.is_running
        assert engine.pid is None

"""Tests for screenpilot.session.orchestrator.SessionOrchestrator."""

from __future__ import annotations

import asyncio

import pytest

from screenpilot.config import OutputConfig, ScreenpilotConfig, SessionConfig
from screenpilot.model import QueueStatus
from screenpilot.session.controller import SessionState
from screenpilot.session.orchestrator import SessionOrchestrator
from screenpilot.session.wire import EventType, WireEvent

BANNER = "\x1b[2JWelcome to fake-cli\r\n\r\n? for shortcuts"


def _reply(proc, line: str) -> None:
    proc.emit(f"\x1b[2J> {line}\r\n\r\nHi there!\r\n\r\n? for shortcuts")


def _config(**session) -> ScreenpilotConfig:
    session.setdefault("ready_timeout", 2.0)
    session.setdefault("chunk_delay", 0)
    return ScreenpilotConfig(
        session=SessionConfig(command=["fake-cli"], **session),
        output=OutputConfig(throttle=0.01),
    )


async def _until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0)


def _system_turns(orch: SessionOrchestrator) -> list[str]:
    return [t.content for t in orch.chat if t.role == "system"]


def _errors(events: list[WireEvent]) -> list[WireEvent]:
    return [e for e in events if e.type == EventType.ERROR]


@pytest.fixture
async def orchestrator(spawner):
    spawner.banner = BANNER
    spawner.responder = _reply
    orch = SessionOrchestrator(_config(), spawn=spawner)
    yield orch
    await orch.shutdown()


def _events(orch: SessionOrchestrator) -> list[WireEvent]:
    events: list[WireEvent] = []
    orch.wire.add_listener(events.append)
    return events


# ---------------------------------------------------------------------------
# Round trip
# ---------------------------------------------------------------------------


class TestRoundTrip:
    async def test_enqueue_to_completion(self, orchestrator, spawner) -> None:
        events = _events(orchestrator)
        item = orchestrator.enqueue("hello")
        await asyncio.wait_for(orchestrator.queue.wait_drained(), 2.0)

        assert item.status == QueueStatus.COMPLETED
        assert "Hi there!" in (item.output or "")
        assert [t.role for t in orchestrator.chat] == ["user", "assistant"]
        assert orchestrator.chat[1].content.startswith("> hello")
        assert spawner.last.sent == b"hello\r"

        types = {e.type for e in events}
        assert EventType.OUTPUT_CHANGED in types
        assert EventType.CHAT_TURN in types
        assert EventType.STATUS_CHANGED in types

    async def test_requests_processed_in_order(self, orchestrator, spawner) -> None:
        orchestrator.enqueue("one")
        orchestrator.enqueue("two")
        await asyncio.wait_for(orchestrator.queue.wait_drained(), 2.0)
        assert spawner.last.sent == b"one\rtwo\r"
        assert [t.role for t in orchestrator.chat] == [
            "user",
            "user",
            "assistant",
            "assistant",
        ]
        assert len(spawner.processes) == 1

    async def test_status_snapshot(self, orchestrator) -> None:
        orchestrator.enqueue("hello")
        await asyncio.wait_for(orchestrator.queue.wait_drained(), 2.0)
        status = orchestrator.status()
        assert status["state"] == "ready"
        assert status["session_ready"] is True
        assert status["processing_queue"] is True
        assert isinstance(status["pid"], int)

    async def test_initial_state(self, orchestrator) -> None:
        orchestrator.enqueue("hello")
        await asyncio.wait_for(orchestrator.queue.wait_drained(), 2.0)
        state = orchestrator.initial_state()
        assert set(state) == {"status", "queue", "chat", "output"}
        assert state["queue"][0]["status"] == "completed"
        assert state["chat"][0]["content"] == "hello"
        assert "Hi there!" in state["output"]


# ---------------------------------------------------------------------------
# Reset / stop
# ---------------------------------------------------------------------------


class TestReset:
    async def test_reset_clears_session_screen_and_queue(self, orchestrator, spawner) -> None:
        orchestrator.enqueue("hello")
        await asyncio.wait_for(orchestrator.queue.wait_drained(), 2.0)
        events = _events(orchestrator)

        await orchestrator.reset()

        assert spawner.last.killed
        assert orchestrator.controller.state == SessionState.NOT_STARTED
        assert orchestrator.screen == ""
        assert len(orchestrator.queue) == 0
        # Transcript survives a reset
        assert len(orchestrator.chat) == 2
        assert events[-1].type == EventType.STATUS_CHANGED
        assert EventType.OUTPUT_CLEARED in {e.type for e in events}

    async def test_reset_is_idempotent(self, orchestrator) -> None:
        orchestrator.enqueue("hello")
        await asyncio.wait_for(orchestrator.queue.wait_drained(), 2.0)
        await orchestrator.reset()
        first = orchestrator.initial_state()
        await orchestrator.reset()
        assert orchestrator.initial_state() == first

    async def test_reset_before_start(self, orchestrator) -> None:
        await orchestrator.reset()
        assert orchestrator.controller.state == SessionState.NOT_STARTED

    async def test_new_session_after_reset(self, orchestrator, spawner) -> None:
        orchestrator.enqueue("one")
        await asyncio.wait_for(orchestrator.queue.wait_drained(), 2.0)
        await orchestrator.reset()
        orchestrator.enqueue("two")
        await asyncio.wait_for(orchestrator.queue.wait_drained(), 2.0)
        assert len(spawner.processes) == 2
        assert spawner.last.sent == b"two\r"

    async def test_reset_drops_in_flight_request(self, spawner) -> None:
        orch = SessionOrchestrator(_config(optimistic_ready_after=0), spawn=spawner)
        item = orch.enqueue("never answered")
        for _ in range(5):
            await asyncio.sleep(0)
        assert item.status == QueueStatus.PROCESSING
        await orch.reset()
        assert orch.queue.current is None
        await orch.shutdown()

    async def test_pause_resume_report_status(self, orchestrator) -> None:
        events = _events(orchestrator)
        orchestrator.pause()
        orchestrator.pause()
        assert orchestrator.status()["processing_queue"] is False
        orchestrator.resume()
        statuses = [e for e in events if e.type == EventType.STATUS_CHANGED]
        assert [s.data["processing_queue"] for s in statuses] == [False, True]


# ---------------------------------------------------------------------------
# Process exit
# ---------------------------------------------------------------------------


class TestProcessExit:
    async def test_crash_fails_current_item(self, spawner) -> None:
        orch = SessionOrchestrator(_config(optimistic_ready_after=0), spawn=spawner)
        events = _events(orch)
        item = orch.enqueue("boom")
        for _ in range(5):
            await asyncio.sleep(0)
        proc = spawner.last
        proc.emit("partial output\r\nlast line\r\n")
        proc.exit(2)

        assert item.status == QueueStatus.ERROR
        assert item.error == "Process exited with code 2"
        assert orch.controller.state == SessionState.FAILED
        exits = [e for e in events if e.type == EventType.SESSION_EXIT]
        assert exits[0].data["exit_code"] == 2
        assert "last line" in exits[0].data["last_output"]
        assert orch.chat[-1].role == "system"

        # Let the queue task run again; the item must not be failed twice
        await asyncio.sleep(0.05)
        assert item.error == "Process exited with code 2"
        assert _system_turns(orch) == ["Error: Process exited with code 2"]
        assert len(_errors(events)) == 1
        await orch.shutdown()

    async def test_exit_while_waiting_for_ready_fails_once(self, spawner) -> None:
        orch = SessionOrchestrator(_config(optimistic_ready_after=5), spawn=spawner)
        events = _events(orch)
        item = orch.enqueue("hello")
        await _until(lambda: bool(spawner.processes))
        await asyncio.sleep(0.01)
        assert orch.controller.state == SessionState.STARTING

        spawner.last.exit(2)
        await asyncio.sleep(0.05)

        assert item.status == QueueStatus.ERROR
        assert item.error == "Process exited with code 2"
        assert _system_turns(orch) == ["Error: Process exited with code 2"]
        assert len(_errors(events)) == 1
        assert spawner.last.writes == []
        await orch.shutdown()

    async def test_exit_mid_send_fails_once(self, spawner) -> None:
        orch = SessionOrchestrator(
            _config(optimistic_ready_after=0, chunk_size=2, chunk_delay=0.02),
            spawn=spawner,
        )
        events = _events(orch)
        item = orch.enqueue("hello world")
        await _until(lambda: bool(spawner.processes and spawner.last.writes))

        spawner.last.exit(2)
        await asyncio.sleep(0.1)

        assert spawner.last.sent == b"he"
        assert item.status == QueueStatus.ERROR
        assert item.error == "Process exited with code 2"
        assert _system_turns(orch) == ["Error: Process exited with code 2"]
        assert len(_errors(events)) == 1
        assert not orch.deriver.armed
        await orch.shutdown()

    async def test_interrupt_reaches_process(self, orchestrator, spawner) -> None:
        await orchestrator.start()
        orchestrator.interrupt()
        assert spawner.last.interrupts == 1

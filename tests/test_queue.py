"""Tests for screenpilot.session.queue.RequestQueue and the queue model."""

from __future__ import annotations

import asyncio

import pytest

from screenpilot.config import SessionConfig
from screenpilot.model import ChatTurn, QueueItem, QueueStatus
from screenpilot.session.controller import SessionController
from screenpilot.session.errors import QueueItemLocked, QueueItemNotFound
from screenpilot.session.queue import RequestQueue
from screenpilot.session.wire import EventType, Wire, WireEvent


def _queue(
    spawner, **config
) -> tuple[RequestQueue, list[ChatTurn], list[WireEvent], list[QueueItem]]:
    session = SessionConfig(
        command=["fake-cli"], chunk_delay=0, optimistic_ready_after=0, **config
    )
    controller = SessionController(session, spawn=spawner)
    chat: list[ChatTurn] = []
    wire = Wire()
    events: list[WireEvent] = []
    wire.add_listener(events.append)
    sent: list[QueueItem] = []
    queue = RequestQueue(controller, chat, wire, ready_timeout=1.0, on_sent=sent.append)
    return queue, chat, events, sent


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


async def _until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class TestQueueItemView:
    def test_text_truncated(self) -> None:
        view = QueueItem(text="x" * 250).to_view()
        assert view["text"] == "x" * 200 + "..."

    def test_short_text_untouched(self) -> None:
        assert QueueItem(text="hi").to_view()["text"] == "hi"

    def test_output_truncated(self) -> None:
        item = QueueItem(text="q", output="y" * 600)
        assert item.to_view()["output"] == "y" * 500 + "..."

    def test_status_value(self) -> None:
        assert QueueItem(text="q").to_view()["status"] == "pending"

    def test_ids_unique(self) -> None:
        assert QueueItem(text="a").id != QueueItem(text="a").id


class TestChatTurn:
    def test_constructors(self) -> None:
        assert ChatTurn.user("hi").role == "user"
        assert ChatTurn.assistant("hi").role == "assistant"
        assert ChatTurn.system("hi").role == "system"

    def test_to_dict(self) -> None:
        turn = ChatTurn.user("hello")
        d = turn.to_dict()
        assert d["role"] == "user"
        assert d["content"] == "hello"
        assert d["id"] == turn.id


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


class TestProcessing:
    async def test_enqueue_sends_first_item(self, spawner) -> None:
        queue, chat, events, sent = _queue(spawner)
        item = queue.enqueue("hello")
        assert [t.role for t in chat] == ["user"]
        await _settle()
        assert item.status == QueueStatus.PROCESSING
        assert item.processing_started_at is not None
        assert spawner.last.sent == b"hello\r"
        assert sent == [item]

    async def test_one_in_flight(self, spawner) -> None:
        queue, _, _, _ = _queue(spawner)
        first = queue.enqueue("one")
        second = queue.enqueue("two")
        await _settle()
        assert first.status == QueueStatus.PROCESSING
        assert second.status == QueueStatus.PENDING
        assert spawner.last.sent == b"one\r"

    async def test_complete_advances(self, spawner) -> None:
        queue, _, _, _ = _queue(spawner)
        first = queue.enqueue("one")
        second = queue.enqueue("two")
        await _settle()
        done = queue.complete("reply one")
        assert done is first
        assert first.status == QueueStatus.COMPLETED
        assert first.output == "reply one"
        assert first.completed_at is not None
        await _settle()
        assert second.status == QueueStatus.PROCESSING
        assert spawner.last.sent == b"one\rtwo\r"

    async def test_complete_without_item_in_flight(self, spawner) -> None:
        queue, _, _, _ = _queue(spawner)
        assert queue.complete("stray") is None

    async def test_error_isolated_in_same_cycle(self, spawner) -> None:
        queue, chat, events, sent = _queue(spawner)
        queue.processing_enabled = False
        bad = queue.enqueue("bad")
        good = queue.enqueue("good")
        # Spawn up front so the first write can be made to fail
        await queue._controller.start()
        spawner.last.fail_next_write = True
        queue.processing_enabled = True

        await queue.advance()

        assert bad.status == QueueStatus.ERROR
        assert "Write failed at byte 0/3" in (bad.error or "")
        assert good.status == QueueStatus.PROCESSING
        assert sent == [good]
        assert chat[-1].role == "system"
        assert chat[-1].content.startswith("Error: ")
        errors = [e for e in events if e.type == EventType.ERROR]
        assert errors[0].data["item_id"] == bad.id

    async def test_item_settled_during_send_not_reported_sent(self, spawner) -> None:
        queue, chat, events, sent = _queue(spawner, chunk_size=2)
        queue._controller._config.chunk_delay = 0.02
        item = queue.enqueue("hello world")
        await _until(lambda: bool(spawner.processes and spawner.last.writes))

        queue.fail(item, "cancelled")
        await asyncio.sleep(0.2)

        # The write finished, but the item had already been settled
        assert spawner.last.sent == b"hello world\r"
        assert item.status == QueueStatus.ERROR
        assert item.error == "cancelled"
        assert sent == []
        assert [t.role for t in chat] == ["user", "system"]
        assert len([e for e in events if e.type == EventType.ERROR]) == 1

    async def test_spawn_failure_errors_every_item(self, spawner) -> None:
        spawner.start_error = FileNotFoundError(2, "No such file", "fake-cli")
        queue, chat, _, _ = _queue(spawner)
        a = queue.enqueue("a")
        b = queue.enqueue("b")
        await _settle()
        assert a.status == QueueStatus.ERROR
        assert b.status == QueueStatus.ERROR
        assert [t.role for t in chat] == ["user", "user", "system", "system"]

    async def test_pause_and_resume(self, spawner) -> None:
        queue, _, _, _ = _queue(spawner)
        queue.pause()
        item = queue.enqueue("later")
        await _settle()
        assert item.status == QueueStatus.PENDING
        queue.resume()
        await _settle()
        assert item.status == QueueStatus.PROCESSING

    async def test_wait_drained(self, spawner) -> None:
        queue, _, _, _ = _queue(spawner)
        queue.enqueue("one")
        await _settle()
        waiter = asyncio.ensure_future(queue.wait_drained())
        await _settle()
        assert not waiter.done()
        queue.complete("done")
        await asyncio.wait_for(waiter, 1.0)

    async def test_queue_changed_events(self, spawner) -> None:
        queue, _, events, _ = _queue(spawner)
        queue.enqueue("one")
        changes = [e for e in events if e.type == EventType.QUEUE_CHANGED]
        assert changes[-1].data["queue"][0]["text"] == "one"


# ---------------------------------------------------------------------------
# Editing
# ---------------------------------------------------------------------------


class TestEditing:
    async def test_edit_pending(self, spawner) -> None:
        queue, _, _, _ = _queue(spawner)
        queue.pause()
        item = queue.enqueue("old")
        queue.edit(item.id, "new")
        assert queue.get(item.id).text == "new"

    async def test_edit_processing_locked(self, spawner) -> None:
        queue, _, _, _ = _queue(spawner)
        item = queue.enqueue("busy")
        await _settle()
        with pytest.raises(QueueItemLocked):
            queue.edit(item.id, "changed")
        with pytest.raises(QueueItemLocked):
            queue.remove(item.id)
        with pytest.raises(QueueItemLocked):
            queue.duplicate(item.id)

    async def test_unknown_id(self, spawner) -> None:
        queue, _, _, _ = _queue(spawner)
        with pytest.raises(QueueItemNotFound):
            queue.edit("missing", "x")
        with pytest.raises(QueueItemNotFound):
            queue.remove("missing")

    async def test_remove(self, spawner) -> None:
        queue, _, _, _ = _queue(spawner)
        queue.pause()
        a = queue.enqueue("a")
        b = queue.enqueue("b")
        queue.remove(a.id)
        assert queue.items == [b]

    async def test_duplicate_inserts_after_source(self, spawner) -> None:
        queue, _, _, _ = _queue(spawner)
        queue.pause()
        a = queue.enqueue("a")
        b = queue.enqueue("b")
        copy = queue.duplicate(a.id)
        assert [i.id for i in queue.items] == [a.id, copy.id, b.id]
        assert copy.text == "a"
        assert copy.status == QueueStatus.PENDING

    async def test_reorder(self, spawner) -> None:
        queue, _, _, _ = _queue(spawner)
        queue.pause()
        a = queue.enqueue("a")
        b = queue.enqueue("b")
        c = queue.enqueue("c")
        queue.reorder(c.id, 0)
        assert [i.text for i in queue.items] == ["c", "a", "b"]
        queue.reorder(c.id, 99)
        assert [i.text for i in queue.items] == ["a", "b", "c"]
        assert {a.id, b.id, c.id} == {i.id for i in queue.items}

    async def test_clear_keeps_in_flight(self, spawner) -> None:
        queue, _, _, _ = _queue(spawner)
        busy = queue.enqueue("busy")
        queue.enqueue("queued")
        await _settle()
        assert queue.clear() == 1
        assert queue.items == [busy]

    async def test_defer_then_promote(self, spawner) -> None:
        queue, _, _, _ = _queue(spawner)
        queue.pause()
        item = queue.enqueue("later")
        queue.defer(item.id, 0.05)
        assert item.status == QueueStatus.WAITING
        assert item.wait_until is not None
        with pytest.raises(QueueItemLocked):
            queue.edit(item.id, "x")
        queue.processing_enabled = True
        await queue.advance()
        assert item.status == QueueStatus.WAITING
        await asyncio.sleep(0.1)
        await _settle()
        assert item.status == QueueStatus.PROCESSING

    async def test_counts(self, spawner) -> None:
        queue, _, _, _ = _queue(spawner)
        queue.pause()
        queue.enqueue("a")
        queue.enqueue("b")
        counts = queue.counts()
        assert counts["pending"] == 2
        assert counts["completed"] == 0

"""Request queue — serializes requests into the single driven process."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from screenpilot.model import ChatTurn, QueueItem, QueueStatus
from screenpilot.session.controller import SessionController
from screenpilot.session.errors import (
    NotWritable,
    ProcessUnavailable,
    QueueItemLocked,
    QueueItemNotFound,
    SendChunkFailure,
    StartupTimeout,
)
from screenpilot.session.wire import Wire

logger = logging.getLogger(__name__)

# Failures that cost one item, not the whole queue
DELIVERY_ERRORS = (ProcessUnavailable, NotWritable, SendChunkFailure, StartupTimeout)


class RequestQueue:
    """FIFO of requests with exactly one in flight.

    ``advance()`` picks the oldest pending item, makes sure the session is
    up and ready, and writes the request. The item stays ``processing``
    until ``complete()`` is called for it (the orchestrator does that when
    a reply turn is committed), after which the next item goes out.

    A delivery failure marks just that item as ``error``, records a system
    turn, and moves on to the next pending item in the same cycle. An item
    that was settled elsewhere while its delivery was in flight (the
    orchestrator fails it on process exit) is left as it is.
    """

    def __init__(
        self,
        controller: SessionController,
        chat: list[ChatTurn],
        wire: Wire,
        ready_timeout: float | None = None,
        on_sent: Callable[[QueueItem], None] | None = None,
    ) -> None:
        self._controller = controller
        self._chat = chat
        self._wire = wire
        self._ready_timeout = ready_timeout
        self._on_sent = on_sent
        self._items: list[QueueItem] = []
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._drained = asyncio.Event()
        self._drained.set()
        self.processing_enabled = True

    # -- Read access -------------------------------------------------------

    @property
    def items(self) -> list[QueueItem]:
        return list(self._items)

    @property
    def current(self) -> QueueItem | None:
        """The item in flight, if any."""
        for item in self._items:
            if item.status == QueueStatus.PROCESSING:
                return item
        return None

    def get(self, item_id: str) -> QueueItem:
        for item in self._items:
            if item.id == item_id:
                return item
        raise QueueItemNotFound(item_id)

    def view(self) -> list[dict[str, Any]]:
        return [item.to_view() for item in self._items]

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in QueueStatus}
        for item in self._items:
            counts[item.status.value] += 1
        return counts

    def __len__(self) -> int:
        return len(self._items)

    # -- Mutation ----------------------------------------------------------

    def enqueue(self, text: str) -> QueueItem:
        """Add a request and start processing if nothing is in flight."""
        item = QueueItem(text=text)
        self._items.append(item)
        turn = ChatTurn.user(text)
        self._chat.append(turn)
        self._wire.send_chat_turn(turn.to_dict())
        logger.info("Queued %s (%d chars)", item.id, len(text))
        self._changed()
        if self.current is None:
            self.schedule_advance()
        return item

    def edit(self, item_id: str, text: str) -> QueueItem:
        item = self._pending(item_id)
        item.text = text
        self._changed()
        return item

    def remove(self, item_id: str) -> QueueItem:
        item = self._pending(item_id)
        self._items.remove(item)
        self._changed()
        return item

    def duplicate(self, item_id: str) -> QueueItem:
        """Insert a fresh pending copy right after the source item."""
        source = self._pending(item_id)
        copy = QueueItem(text=source.text)
        self._items.insert(self._items.index(source) + 1, copy)
        self._changed()
        return copy

    def reorder(self, item_id: str, index: int) -> None:
        """Move a pending item to ``index`` (clamped to the list)."""
        item = self._pending(item_id)
        self._items.remove(item)
        index = max(0, min(index, len(self._items)))
        self._items.insert(index, item)
        self._changed()

    def defer(self, item_id: str, seconds: float) -> QueueItem:
        """Hold a pending item back for ``seconds``."""
        item = self._pending(item_id)
        item.status = QueueStatus.WAITING
        item.wait_until = time.time() + seconds
        loop = asyncio.get_running_loop()
        self._timers[item.id] = loop.call_later(seconds, self._wake, item.id)
        self._changed()
        return item

    def clear(self) -> int:
        """Drop every item except the one in flight. Returns the count dropped."""
        keep = [item for item in self._items if item.status == QueueStatus.PROCESSING]
        dropped = len(self._items) - len(keep)
        self._items = keep
        self._cancel_timers()
        self._changed()
        return dropped

    def clear_all(self) -> None:
        """Drop everything, in-flight item included."""
        self._items.clear()
        self._cancel_timers()
        self._changed()

    def pause(self) -> None:
        self.processing_enabled = False
        logger.info("Queue processing paused")

    def resume(self) -> None:
        self.processing_enabled = True
        logger.info("Queue processing resumed")
        self.schedule_advance()

    def _pending(self, item_id: str) -> QueueItem:
        item = self.get(item_id)
        if item.status != QueueStatus.PENDING:
            raise QueueItemLocked(item_id, item.status.value)
        return item

    # -- Processing --------------------------------------------------------

    def schedule_advance(self) -> None:
        task = asyncio.get_running_loop().create_task(self.advance())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Queue advance failed", exc_info=task.exception())

    async def advance(self) -> None:
        """Send the next pending item, skipping over items that fail."""
        async with self._lock:
            while self.processing_enabled:
                self._promote_waiting()
                if self.current is not None:
                    return
                item = next((i for i in self._items if i.is_pending), None)
                if item is None:
                    break

                item.status = QueueStatus.PROCESSING
                item.processing_started_at = time.time()
                self._changed()
                logger.info("Processing %s", item.id)

                try:
                    await self._controller.start()
                    await self._controller.wait_until_ready(self._ready_timeout)
                    await self._controller.send(item.text)
                except DELIVERY_ERRORS as e:
                    if item.status == QueueStatus.PROCESSING:
                        self.fail(item, str(e))
                    continue

                if item.status != QueueStatus.PROCESSING:
                    # Settled elsewhere while the send was in flight (process exit)
                    continue
                if self._on_sent:
                    self._on_sent(item)
                return

    def complete(self, output: str) -> QueueItem | None:
        """Mark the in-flight item completed and move on."""
        item = self.current
        if item is None:
            logger.debug("Reply committed with no request in flight")
            return None
        item.status = QueueStatus.COMPLETED
        item.output = output
        item.completed_at = time.time()
        logger.info("Completed %s", item.id)
        self._changed()
        self.schedule_advance()
        return item

    def fail(self, item: QueueItem, message: str) -> None:
        """Mark ``item`` as failed and record why."""
        logger.warning("Request %s failed: %s", item.id, message)
        item.status = QueueStatus.ERROR
        item.error = message
        item.completed_at = time.time()
        turn = ChatTurn.system(f"Error: {message}")
        self._chat.append(turn)
        self._wire.send_chat_turn(turn.to_dict())
        self._wire.send_error(message, item_id=item.id)
        self._changed()

    def _promote_waiting(self) -> None:
        now = time.time()
        promoted = False
        for item in self._items:
            if item.status == QueueStatus.WAITING and (item.wait_until or 0) <= now:
                item.status = QueueStatus.PENDING
                item.wait_until = None
                self._timers.pop(item.id, None)
                promoted = True
        if promoted:
            self._changed()

    def _wake(self, item_id: str) -> None:
        self._timers.pop(item_id, None)
        # The loop clock and wall clock may disagree slightly; the timer wins
        for item in self._items:
            if item.id == item_id and item.status == QueueStatus.WAITING:
                item.status = QueueStatus.PENDING
                item.wait_until = None
                self._changed()
        self.schedule_advance()

    def _cancel_timers(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def cancel(self) -> None:
        """Cancel timers and in-progress advance tasks."""
        self._cancel_timers()
        for task in list(self._tasks):
            task.cancel()

    # -- Notification ------------------------------------------------------

    def _changed(self) -> None:
        busy = any(
            item.status
            in (QueueStatus.PENDING, QueueStatus.PROCESSING, QueueStatus.WAITING)
            for item in self._items
        )
        if busy:
            self._drained.clear()
        else:
            self._drained.set()
        self._wire.send_queue(self.view())

    async def wait_drained(self) -> None:
        """Wait until nothing is pending, waiting or in flight."""
        await self._drained.wait()

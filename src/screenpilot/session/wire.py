"""Wire protocol — decouples the session core from its display surfaces.

Events flow from the orchestrator to consumers. The TUI, the plain CLI
and any remote client subscribe to the wire and render events, so every
surface is driven by the same session code.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBER_QUEUE = 256


class EventType(enum.Enum):
    QUEUE_CHANGED = "queue_changed"
    STATUS_CHANGED = "status_changed"
    OUTPUT_CHANGED = "output_changed"
    OUTPUT_CLEARED = "output_cleared"
    CHAT_TURN = "chat_turn"
    ERROR = "error"
    SESSION_EXIT = "session_exit"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


Listener = Callable[[WireEvent], None]


class Wire:
    """Message bus: session core -> display consumers.

    Single-producer, multi-consumer broadcast. Consumers either subscribe
    with a bounded queue or register a plain callback. Neither kind can
    stall the producer: a full queue loses that one event, and a listener
    that raises is logged and skipped.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._listeners: list[Listener] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        # Copies: a consumer may leave from inside its own callback
        for q in list(self._subscribers):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Subscriber queue full, dropping %s event", event.type.value
                )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Wire listener failed on %s event", event.type.value)

    def send_queue(self, items: list[dict[str, Any]]) -> None:
        self.send(WireEvent(type=EventType.QUEUE_CHANGED, data={"queue": items}))

    def send_status(self, status: dict[str, Any]) -> None:
        self.send(WireEvent(type=EventType.STATUS_CHANGED, data=status))

    def send_output(self, screen: str) -> None:
        self.send(WireEvent(type=EventType.OUTPUT_CHANGED, data={"output": screen}))

    def send_output_cleared(self) -> None:
        self.send(WireEvent(type=EventType.OUTPUT_CLEARED))

    def send_chat_turn(self, turn: dict[str, Any]) -> None:
        self.send(WireEvent(type=EventType.CHAT_TURN, data=turn))

    def send_error(self, error: str, item_id: str | None = None) -> None:
        self.send(
            WireEvent(type=EventType.ERROR, data={"error": error, "item_id": item_id})
        )

    def send_session_exit(
        self,
        pid: int | None,
        exit_code: int | None,
        last_output: str = "",
    ) -> None:
        """Notify subscribers that the driven process exited on its own."""
        self.send(
            WireEvent(
                type=EventType.SESSION_EXIT,
                data={
                    "pid": pid,
                    "exit_code": exit_code,
                    "last_output": last_output[:500],
                },
            )
        )

    def subscribe(
        self, maxsize: int = DEFAULT_SUBSCRIBER_QUEUE
    ) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked synchronously for every event."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def consumer_count(self) -> int:
        return len(self._subscribers) + len(self._listeners)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        if self._closed:
            return
        self._closed = True
        for q in self._subscribers:
            try:
                q.put_nowait(None)
            except asyncio.QueueFull:
                # Make room for the sentinel; the reader is about to stop anyway
                q.get_nowait()
                q.put_nowait(None)

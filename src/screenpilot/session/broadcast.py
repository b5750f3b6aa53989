"""Throttled, deduplicated fan-out of the current screen."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from screenpilot.pty.buffer import ScreenBuffer
from screenpilot.session.wire import Wire

logger = logging.getLogger(__name__)

FlushListener = Callable[[str], None]


class ThrottledBroadcaster:
    """Pushes screen snapshots to consumers at a bounded rate.

    ``notify()`` flushes immediately when at least ``throttle`` seconds
    have passed since the previous flush. Otherwise exactly one deferred
    flush is scheduled for the remainder of the interval; notifies that
    arrive before it fires only change what it will send, which is always
    the latest screen.

    Flush listeners (readiness detection, transcript derivation) see every
    flush. Wire consumers only see screens that differ from the last one
    sent.

    Every append also re-arms an idle timer. If no output arrives for
    ``auto_clear`` seconds the buffer is cleared and consumers are told so.

    Must be used from the event loop thread.
    """

    def __init__(
        self,
        buffer: ScreenBuffer,
        wire: Wire,
        throttle: float = 0.5,
        auto_clear: float = 30.0,
    ) -> None:
        self._buffer = buffer
        self._wire = wire
        self._throttle = throttle
        self._auto_clear = auto_clear
        self._listeners: list[FlushListener] = []
        self._pending: str | None = None
        self._last_flush_at: float | None = None
        self._last_sent: str | None = None
        self._flush_handle: asyncio.TimerHandle | None = None
        self._clear_handle: asyncio.TimerHandle | None = None

    def add_flush_listener(self, listener: FlushListener) -> None:
        self._listeners.append(listener)

    def output_appended(self, screen: str) -> None:
        """Entry point for each buffer append."""
        self._arm_auto_clear()
        self.notify(screen)

    def notify(self, screen: str) -> None:
        """Request a broadcast of ``screen``, subject to throttling."""
        self._pending = screen
        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._last_flush_at is None or now - self._last_flush_at >= self._throttle:
            self.flush()
        elif self._flush_handle is None:
            delay = self._throttle - (now - self._last_flush_at)
            self._flush_handle = loop.call_later(delay, self.flush)

    def flush(self) -> None:
        """Deliver the latest pending screen right now."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None

        screen = self._pending
        self._pending = None
        if not screen:
            return

        self._last_flush_at = asyncio.get_running_loop().time()

        if screen != self._last_sent:
            self._last_sent = screen
            self._wire.send_output(screen)

        for listener in list(self._listeners):
            try:
                listener(screen)
            except Exception:
                logger.exception("Flush listener failed")

    def _arm_auto_clear(self) -> None:
        if self._clear_handle is not None:
            self._clear_handle.cancel()
        loop = asyncio.get_running_loop()
        self._clear_handle = loop.call_later(self._auto_clear, self._auto_clear_fired)

    def _auto_clear_fired(self) -> None:
        self._clear_handle = None
        logger.debug("No output for %.1fs, clearing screen", self._auto_clear)
        self.clear()
        self._wire.send_output_cleared()

    def clear(self) -> None:
        """Clear the buffer and forget what was last sent."""
        self._buffer.clear()
        self._pending = None
        self._last_sent = None

    def cancel(self) -> None:
        """Drop pending timers without flushing."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None
        self._pending = None

    @property
    def has_pending_flush(self) -> bool:
        return self._flush_handle is not None

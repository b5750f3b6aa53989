"""Session orchestrator — the one object that owns a driven session.

The orchestrator wires the pieces together:
1. SessionController owns the process and its readiness state
2. ScreenBuffer turns raw output into the current screen
3. ThrottledBroadcaster pushes screens to consumers via the Wire
4. TranscriptDeriver turns ready screens into assistant turns
5. RequestQueue feeds requests in one at a time

Every surface (TUI, plain CLI, remote clients) talks to an orchestrator
and listens on its wire. All methods must be called on the event loop
that runs the session.
"""

from __future__ import annotations

import logging
from typing import Any

from screenpilot.config import ScreenpilotConfig
from screenpilot.model import ChatTurn, QueueItem
from screenpilot.pty.buffer import ScreenBuffer
from screenpilot.pty.session import spawn_pty
from screenpilot.session.broadcast import ThrottledBroadcaster
from screenpilot.session.controller import SessionController, SessionState, SpawnFn
from screenpilot.session.queue import RequestQueue
from screenpilot.session.transcript import TranscriptDeriver
from screenpilot.session.wire import Wire

logger = logging.getLogger(__name__)

EXIT_TAIL_LINES = 5


class SessionOrchestrator:
    """Single owned aggregate for one driven CLI session."""

    def __init__(
        self,
        config: ScreenpilotConfig | None = None,
        wire: Wire | None = None,
        spawn: SpawnFn = spawn_pty,
    ) -> None:
        self.config = config or ScreenpilotConfig()
        self.wire = wire or Wire()
        self.chat: list[ChatTurn] = []

        output = self.config.output
        self.buffer = ScreenBuffer(output.max_buffer, output.clear_screen_markers)
        self.broadcaster = ThrottledBroadcaster(
            self.buffer,
            self.wire,
            throttle=output.throttle,
            auto_clear=output.auto_clear,
        )
        self.deriver = TranscriptDeriver.from_config(
            self.chat, self.config.transcript, on_commit=self._on_commit
        )
        self.controller = SessionController(
            self.config.session,
            matchers=self.deriver.matchers,
            spawn=spawn,
            on_output=self._on_output,
            on_state_change=self._on_state,
            on_exit=self._on_exit,
        )
        self.queue = RequestQueue(
            self.controller,
            self.chat,
            self.wire,
            ready_timeout=self.config.session.ready_timeout,
            on_sent=self._on_sent,
        )
        # Readiness first, so a reply commit sees the READY state
        self.broadcaster.add_flush_listener(self.controller.observe_screen)
        self.broadcaster.add_flush_listener(self.deriver.observe)

    # -- Queue operations --------------------------------------------------

    def enqueue(self, text: str) -> QueueItem:
        return self.queue.enqueue(text)

    def edit(self, item_id: str, text: str) -> QueueItem:
        return self.queue.edit(item_id, text)

    def remove(self, item_id: str) -> QueueItem:
        return self.queue.remove(item_id)

    def duplicate(self, item_id: str) -> QueueItem:
        return self.queue.duplicate(item_id)

    def reorder(self, item_id: str, index: int) -> None:
        self.queue.reorder(item_id, index)

    def defer(self, item_id: str, seconds: float) -> QueueItem:
        return self.queue.defer(item_id, seconds)

    def clear_queue(self) -> int:
        return self.queue.clear()

    def queue_view(self) -> list[dict[str, Any]]:
        return self.queue.view()

    def pause(self) -> None:
        if self.queue.processing_enabled:
            self.queue.pause()
            self._send_status()

    def resume(self) -> None:
        if not self.queue.processing_enabled:
            self.queue.resume()
            self._send_status()

    def clear_chat(self) -> None:
        self.chat.clear()
        self.deriver.reset()

    # -- Session operations ------------------------------------------------

    async def start(self, interactive: bool = True) -> None:
        """Start the process now instead of on the first request."""
        await self.controller.start(interactive=interactive)

    async def stop(self) -> None:
        await self.controller.stop()

    def interrupt(self) -> None:
        self.controller.interrupt()

    async def reset(self) -> None:
        """Stop the process and clear screen and queue.

        The chat transcript is kept. Consumers are notified once
        everything has been cleared.
        """
        logger.info("Resetting session")
        self.queue.cancel()
        await self.controller.stop()
        self.broadcaster.cancel()
        self.broadcaster.clear()
        self.queue.clear_all()
        self.deriver.reset()
        self.controller.reset()
        self.wire.send_output_cleared()
        self._send_status()

    async def shutdown(self) -> None:
        """Stop everything and close the wire."""
        self.queue.cancel()
        await self.controller.stop()
        self.broadcaster.cancel()
        self.wire.close()

    # -- Read access -------------------------------------------------------

    @property
    def screen(self) -> str:
        return self.buffer.screen

    def status(self) -> dict[str, Any]:
        return {
            "state": self.controller.state.value,
            "session_ready": self.controller.ready,
            "processing_queue": self.queue.processing_enabled,
            "pid": self.controller.pid,
        }

    def initial_state(self) -> dict[str, Any]:
        """Everything a newly joined consumer needs to draw itself."""
        return {
            "status": self.status(),
            "queue": self.queue_view(),
            "chat": [turn.to_dict() for turn in self.chat],
            "output": self.buffer.screen,
        }

    # -- Internal wiring ---------------------------------------------------

    def _send_status(self) -> None:
        self.wire.send_status(self.status())

    def _on_output(self, text: str) -> None:
        screen = self.buffer.append(text)
        self.broadcaster.output_appended(screen)

    def _on_sent(self, item: QueueItem) -> None:
        self.deriver.expect_reply(self.buffer.screen)

    def _on_commit(self, turn: ChatTurn) -> None:
        self.wire.send_chat_turn(turn.to_dict())
        self.queue.complete(turn.content)

    def _on_state(self, state: SessionState) -> None:
        self._send_status()

    def _on_exit(self, pid: int, exit_code: int | None) -> None:
        tail = "\n".join(self.buffer.tail(EXIT_TAIL_LINES))
        logger.warning("Session process %s exited (code=%s)", pid, exit_code)
        self.deriver.disarm()
        item = self.queue.current
        if item is not None:
            self.queue.fail(item, f"Process exited with code {exit_code}")
        self.wire.send_session_exit(pid, exit_code, tail)
        self.queue.schedule_advance()

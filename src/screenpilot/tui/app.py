"""Main Textual application for the screenpilot TUI."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from rich.markup import escape
from rich.text import Text

from textual import work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical, VerticalScroll
from textual.widgets import Footer, Header, Input, Static

from screenpilot.render.ansi import to_rich_text
from screenpilot.session.errors import ScreenpilotError
from screenpilot.session.orchestrator import SessionOrchestrator
from screenpilot.session.wire import EventType, WireEvent

logger = logging.getLogger(__name__)

_STATUS_ICONS: dict[str, str] = {
    "pending": "○",
    "processing": "◐",
    "completed": "●",
    "error": "✕",
    "waiting": "⧗",
}

_ROLE_LABELS: dict[str, str] = {
    "user": "[bold cyan]you[/bold cyan]",
    "assistant": "[bold green]cli[/bold green]",
    "system": "[bold yellow]system[/bold yellow]",
}


class TUILogHandler(logging.Handler):
    """Logging handler that captures the last log message for the status bar.

    Writing to stderr would corrupt the Textual display, so the most recent
    record is kept and the status bar is refreshed instead.
    """

    def __init__(self, app: ScreenpilotApp) -> None:
        super().__init__()
        self._app = app
        self.last_message: str = ""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.last_message = self.format(record)
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                # Worker thread: hop onto Textual's loop
                self._app.call_from_thread(self._app._update_status)
            else:
                self._app._update_status()
        except Exception:
            self.handleError(record)


class ScreenpilotApp(App):
    """Screenpilot TUI — the driven CLI's screen, chat and request queue."""

    TITLE = "screenpilot"
    CSS = """
    #main-layout {
        layout: horizontal;
        height: 1fr;
    }

    #screen-scroll {
        width: 3fr;
        border: solid $primary;
    }

    #sidebar {
        width: 2fr;
        min-width: 36;
    }

    #chat-scroll {
        height: 2fr;
        border: solid $secondary;
    }

    #queue-pane {
        height: 1fr;
        border: solid $secondary;
        padding: 0 1;
        overflow-y: auto;
    }

    #prompt {
        dock: bottom;
    }

    #status-bar {
        dock: bottom;
        height: 1;
        background: $surface;
        color: $text-muted;
        padding: 0 1;
    }

    .chat-turn {
        margin: 0 0 1 1;
        height: auto;
    }

    .chat-system {
        color: $warning;
    }

    .exit-notice {
        color: $error;
        margin: 0 0 1 1;
    }
    """

    BINDINGS = [
        Binding("ctrl+x", "interrupt", "Interrupt"),
        Binding("ctrl+r", "reset", "Reset"),
        Binding("ctrl+p", "toggle_processing", "Pause/Resume"),
        Binding("ctrl+q", "quit", "Quit"),
    ]

    def __init__(self, orchestrator: SessionOrchestrator) -> None:
        super().__init__()
        self.orchestrator = orchestrator
        self.wire = orchestrator.wire
        self._status: dict[str, Any] = orchestrator.status()
        self._log_handler: TUILogHandler | None = None
        self._widget_counter = 0

    def _next_id(self, prefix: str = "w") -> str:
        self._widget_counter += 1
        return f"{prefix}-{self._widget_counter}"

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal(id="main-layout"):
            with VerticalScroll(id="screen-scroll"):
                yield Static(id="screen")
            with Vertical(id="sidebar"):
                yield VerticalScroll(id="chat-scroll")
                yield Static(id="queue-pane")
        yield Input(placeholder="Type a request and press Enter", id="prompt")
        yield Static(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        self.sub_title = " ".join(self.orchestrator.config.session.command)
        self._install_log_handler()
        self._apply_initial_state(self.orchestrator.initial_state())
        self._listen_wire()
        self._start_session()
        self.query_one("#prompt", Input).focus()

    def _install_log_handler(self) -> None:
        root = logging.getLogger()
        for handler in root.handlers[:]:
            root.removeHandler(handler)
        self._log_handler = TUILogHandler(self)
        self._log_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        root.addHandler(self._log_handler)

    def _apply_initial_state(self, state: dict[str, Any]) -> None:
        self._status = state["status"]
        self._render_screen(state["output"])
        self._render_queue(state["queue"])
        for turn in state["chat"]:
            self._append_turn(turn)
        self._update_status()

    # --- Status bar ---

    def _update_status(self) -> None:
        try:
            status = self.query_one("#status-bar", Static)
        except Exception:
            # Not mounted yet, or already torn down
            return
        parts = [f"Session: {self._status.get('state', '?')}"]
        pid = self._status.get("pid")
        if pid:
            parts.append(f"pid {pid}")
        if not self._status.get("processing_queue", True):
            parts.append("[bold]queue paused[/bold]")
        if self._log_handler and self._log_handler.last_message:
            last_log = self._log_handler.last_message
            if len(last_log) > 80:
                last_log = last_log[:77] + "..."
            parts.append(f"[dim]{escape(last_log)}[/dim]")
        status.update(" | ".join(parts))

    # --- Panes ---

    def _render_screen(self, output: str) -> None:
        screen = self.query_one("#screen", Static)
        screen.update(to_rich_text(output) if output else Text(""))
        self.query_one("#screen-scroll", VerticalScroll).scroll_end(animate=False)

    def _render_queue(self, items: list[dict[str, Any]]) -> None:
        pane = self.query_one("#queue-pane", Static)
        if not items:
            pane.update("[dim]Queue is empty[/dim]")
            return
        lines = []
        for item in items:
            icon = _STATUS_ICONS.get(item["status"], "?")
            first_line = item["text"].splitlines()[0] if item["text"] else ""
            lines.append(f"{icon} {escape(first_line[:60])} [dim]{item['status']}[/dim]")
        pane.update("\n".join(lines))

    def _append_turn(self, turn: dict[str, Any]) -> None:
        chat = self.query_one("#chat-scroll", VerticalScroll)
        role = turn.get("role", "system")
        label = _ROLE_LABELS.get(role, role)
        classes = "chat-turn chat-system" if role == "system" else "chat-turn"
        widget = Static(
            f"{label}\n{escape(turn.get('content', ''))}",
            id=self._next_id("turn"),
            classes=classes,
        )
        chat.mount(widget)
        chat.scroll_end(animate=False)

    # --- Session ---

    @work(exclusive=True, group="session")
    async def _start_session(self) -> None:
        try:
            await self.orchestrator.start()
        except ScreenpilotError as e:
            self.notify(str(e), severity="error")

    @work(exclusive=True, group="wire")
    async def _listen_wire(self) -> None:
        queue = self.wire.subscribe()
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                self._handle_event(event)
        finally:
            self.wire.unsubscribe(queue)

    def _handle_event(self, event: WireEvent) -> None:
        d = event.data
        if event.type == EventType.OUTPUT_CHANGED:
            self._render_screen(d.get("output", ""))
        elif event.type == EventType.OUTPUT_CLEARED:
            self._render_screen("")
        elif event.type == EventType.QUEUE_CHANGED:
            self._render_queue(d.get("queue", []))
        elif event.type == EventType.CHAT_TURN:
            self._append_turn(d)
        elif event.type == EventType.STATUS_CHANGED:
            self._status = d
            self._update_status()
        elif event.type == EventType.ERROR:
            self.notify(d.get("error", "error"), severity="error")
        elif event.type == EventType.SESSION_EXIT:
            chat = self.query_one("#chat-scroll", VerticalScroll)
            chat.mount(
                Static(
                    f"[bold]Process exited (code {d.get('exit_code')})[/bold]\n"
                    f"{escape(d.get('last_output', ''))}",
                    id=self._next_id("exit"),
                    classes="exit-notice",
                )
            )
            chat.scroll_end(animate=False)

    # --- Input and actions ---

    def on_input_submitted(self, event: Input.Submitted) -> None:
        text = event.value.strip()
        if not text:
            return
        self.orchestrator.enqueue(text)
        event.input.value = ""

    def action_interrupt(self) -> None:
        self.orchestrator.interrupt()

    async def action_reset(self) -> None:
        await self.orchestrator.reset()

    def action_toggle_processing(self) -> None:
        if self.orchestrator.queue.processing_enabled:
            self.orchestrator.pause()
        else:
            self.orchestrator.resume()

    async def action_quit(self) -> None:
        await self.orchestrator.shutdown()
        self.exit()

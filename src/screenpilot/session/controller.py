"""Session controller — lifecycle and input of the one driven process."""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable

from screenpilot.config import SessionConfig
from screenpilot.pty.session import ProcessHandle, spawn_pty
from screenpilot.session.errors import (
    NotWritable,
    ProcessUnavailable,
    SendChunkFailure,
    StartupTimeout,
)
from screenpilot.session.transcript import ReadyMatcher, is_ready

logger = logging.getLogger(__name__)

SpawnFn = Callable[..., ProcessHandle]


class SessionState(enum.Enum):
    """Lifecycle of the driven process.

    NOT_STARTED -> STARTING -> READY <-> BUSY -> TERMINATED, with FAILED
    reachable from anywhere. TERMINATED and FAILED go back to STARTING on
    the next start().
    """

    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    TERMINATED = "terminated"
    FAILED = "failed"


class SessionController:
    """Owns at most one live process and tracks whether it is ready.

    Readiness comes from the screen: the broadcaster hands every flushed
    screen to ``observe_screen()``, and a ready prompt moves the session
    from STARTING or BUSY to READY.
    """

    def __init__(
        self,
        config: SessionConfig,
        matchers: list[ReadyMatcher] | None = None,
        spawn: SpawnFn = spawn_pty,
        on_output: Callable[[str], None] | None = None,
        on_state_change: Callable[[SessionState], None] | None = None,
        on_exit: Callable[[int, int | None], None] | None = None,
    ) -> None:
        self._config = config
        self._matchers = matchers or []
        self._spawn = spawn
        self._on_output = on_output
        self._on_state_change = on_state_change
        self._on_exit = on_exit
        self._process: ProcessHandle | None = None
        self._state = SessionState.NOT_STARTED
        self._state_changed = asyncio.Event()
        self._started_at: float | None = None

    # -- State -------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state == SessionState.READY

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.alive

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def process(self) -> ProcessHandle | None:
        return self._process

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        logger.info("Session state %s -> %s", self._state.value, state.value)
        self._state = state
        self._state_changed.set()
        if self._on_state_change:
            self._on_state_change(state)

    # -- Lifecycle ---------------------------------------------------------

    async def start(self, interactive: bool = True) -> None:
        """Spawn the process unless one is already running.

        Raises:
            ProcessUnavailable: If the command cannot be spawned.
        """
        if self.alive:
            return

        command = self._config.command
        self._set_state(SessionState.STARTING)
        proc = self._spawn(
            command,
            cwd=self._config.cwd,
            env=self._config.env,
            interactive=interactive,
        )
        proc.set_on_output(self._handle_output)
        proc.set_on_exit(self._handle_exit)
        try:
            await proc.start()
        except OSError as e:
            logger.error("Failed to start %s: %s", " ".join(command), e)
            self._process = None
            self._set_state(SessionState.FAILED)
            raise ProcessUnavailable(f"Failed to start {command[0]}: {e}") from e

        self._process = proc
        self._started_at = asyncio.get_running_loop().time()

    async def stop(self) -> None:
        """Kill the process group. Safe to call repeatedly."""
        proc = self._process
        self._process = None
        self._started_at = None
        if proc is not None:
            proc.kill()
        if self._state != SessionState.NOT_STARTED:
            self._set_state(SessionState.TERMINATED)

    def reset(self) -> None:
        """Return to NOT_STARTED. The process must already be stopped."""
        if self._process is not None:
            raise RuntimeError("reset() with a live process; call stop() first")
        self._set_state(SessionState.NOT_STARTED)

    def interrupt(self) -> None:
        """Send Ctrl-C to the running program, if there is one."""
        if not self.alive:
            logger.debug("Interrupt ignored: no running process")
            return
        assert self._process is not None
        self._process.interrupt()
        logger.info("Sent interrupt to pid %s", self._process.pid)

    # -- Input -------------------------------------------------------------

    async def send(self, text: str) -> None:
        """Write ``text`` in paced chunks, then submit it.

        Raises:
            ProcessUnavailable: No live process.
            NotWritable: The terminal input channel is closed.
            SendChunkFailure: A write failed part way through.
        """
        proc = self._process
        if proc is None or not proc.alive:
            raise ProcessUnavailable("No running process to send to")
        if not proc.writable:
            raise NotWritable(f"Terminal input of pid {proc.pid} is closed")

        data = text.encode("utf-8")
        total = len(data)
        size = self._config.chunk_size
        for offset in range(0, total, size):
            try:
                proc.write(data[offset : offset + size])
            except OSError as e:
                raise SendChunkFailure(offset, total, str(e)) from e
            # Large pastes get dropped by some CLIs without pacing
            await asyncio.sleep(self._config.chunk_delay)

        try:
            proc.write(self._config.submit.encode("utf-8"))
        except OSError as e:
            raise SendChunkFailure(total, total, str(e)) from e

        logger.debug("Sent %d bytes in %d chunks", total, -(-total // size))
        self._set_state(SessionState.BUSY)

    # -- Readiness ---------------------------------------------------------

    def observe_screen(self, screen: str) -> None:
        """Move to READY when ``screen`` shows the input prompt."""
        if self._state not in (SessionState.STARTING, SessionState.BUSY):
            return
        if is_ready(screen, self._matchers):
            self._set_state(SessionState.READY)

    async def wait_until_ready(self, timeout: float | None = None) -> None:
        """Wait for a ready prompt, with an optimistic fallback.

        A process that has been alive for the optimistic grace period is
        treated as usable even if no prompt was recognized, since prompt
        styles vary between CLI versions.

        Raises:
            ProcessUnavailable: The process is gone or exits while waiting.
            StartupTimeout: No readiness before ``timeout`` seconds.
        """
        if timeout is None:
            timeout = self._config.ready_timeout
        grace = self._config.optimistic_grace

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            if self._state == SessionState.READY:
                return
            if not self.alive:
                raise ProcessUnavailable("Process is not running")

            now = loop.time()
            alive_for = now - self._started_at if self._started_at is not None else 0.0
            if alive_for >= grace:
                logger.info(
                    "No ready prompt seen after %.1fs; assuming session is usable",
                    alive_for,
                )
                return

            remaining = deadline - now
            if remaining <= 0:
                raise StartupTimeout(timeout)

            self._state_changed.clear()
            try:
                await asyncio.wait_for(
                    self._state_changed.wait(),
                    timeout=min(remaining, grace - alive_for),
                )
            except asyncio.TimeoutError:
                pass

    # -- Process callbacks -------------------------------------------------

    def _handle_output(self, text: str) -> None:
        if self._on_output:
            self._on_output(text)

    def _handle_exit(self, proc: ProcessHandle, exit_code: int | None) -> None:
        if proc is not self._process:
            # A process we already replaced or stopped
            return
        self._process = None
        self._started_at = None
        if exit_code == 0:
            self._set_state(SessionState.TERMINATED)
        else:
            self._set_state(SessionState.FAILED)
        if self._on_exit:
            self._on_exit(proc.pid, exit_code)

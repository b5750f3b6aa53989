"""PTY session — the external interactive process behind a pseudo-terminal."""

from __future__ import annotations

import asyncio
import codecs
import enum
import logging
import os
import pty
import signal
import subprocess
import uuid
from dataclasses import dataclass, field
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

READ_SIZE = 4096
CTRL_C = b"\x03"

OutputCallback = Callable[[str], None]


class PTYStatus(enum.Enum):
    """Lifecycle states for a PTY session."""

    CREATED = "created"
    RUNNING = "running"
    KILLING = "killing"  # Kill requested, waiting for process to die
    KILLED = "killed"  # Killed by us (SIGKILL)
    EXITED = "exited"  # Process exited on its own


class ProcessHandle(Protocol):
    """What the session controller needs from a spawned process.

    ``PTYSession`` is the real implementation; tests substitute fakes.
    """

    @property
    def pid(self) -> int: ...

    @property
    def alive(self) -> bool: ...

    @property
    def writable(self) -> bool: ...

    @property
    def exit_code(self) -> int | None: ...

    def set_on_output(self, callback: OutputCallback) -> None: ...

    def set_on_exit(self, callback: Callable[..., None]) -> None: ...

    async def start(self) -> None: ...

    def write(self, data: bytes) -> None: ...

    def interrupt(self) -> None: ...

    def kill(self) -> None: ...


@dataclass
class PTYSession:
    """A managed pseudo-terminal session.

    Wraps an interactive CLI with:
    - Process group isolation (start_new_session) for safe tree-killing
    - Incremental UTF-8 decoding of the output stream
    - Output and exit notification callbacks, invoked on the event loop

    Uses subprocess.Popen (not os.fork) to avoid deadlocks when
    spawned from within an asyncio event loop on macOS.
    """

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    command: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    title: str = ""
    interactive: bool = True

    # Internal state
    _master_fd: int = field(default=-1, init=False)
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _pid: int = field(default=0, init=False)
    _pgid: int = field(default=0, init=False)
    _reader_task: asyncio.Task | None = field(default=None, init=False)
    _status: PTYStatus = field(default=PTYStatus.CREATED, init=False)
    _exit_code: int | None = field(default=None, init=False)
    _on_output: OutputCallback | None = field(default=None, init=False)
    _on_exit: Callable[[PTYSession, int | None], None] | None = field(
        default=None, init=False
    )

    def set_on_output(self, callback: OutputCallback) -> None:
        """Set a callback receiving each decoded output fragment."""
        self._on_output = callback

    def set_on_exit(self, callback: Callable[[PTYSession, int | None], None]) -> None:
        """Set a callback to be invoked when the process exits on its own.

        The callback receives (session, exit_code). It is NOT called when
        the process is killed via kill().
        """
        self._on_exit = callback

    async def start(self) -> None:
        """Spawn the process in a new PTY with its own process group.

        Raises OSError (FileNotFoundError, PermissionError, ...) if the
        command cannot be executed.
        """
        master_fd, slave_fd = pty.openpty()

        env = {**os.environ, **self.env}
        # Interactive CLIs draw their prompt UI only on a capable terminal
        env["TERM"] = "xterm-256color" if self.interactive else "dumb"
        env.pop("PROMPT_COMMAND", None)

        try:
            self._proc = subprocess.Popen(
                self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,  # Creates new process group
                env=env,
                cwd=self.cwd,
            )
        except OSError:
            os.close(master_fd)
            raise
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._master_fd = master_fd
        self._pid = self._proc.pid
        self._pgid = os.getpgid(self._pid)
        self._status = PTYStatus.RUNNING
        self._reader_task = asyncio.create_task(self._read_loop())

        logger.info(
            "PTY session %s started: pid=%d pgid=%d cmd=%s",
            self.id,
            self._pid,
            self._pgid,
            " ".join(self.command),
        )

    async def _read_loop(self) -> None:
        """Continuously read output from the PTY master fd.

        The blocking read runs in the default executor; the callback runs
        back on the event loop after each await, so consumers never see
        output from another thread.
        """
        loop = asyncio.get_running_loop()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        fd = self._master_fd
        try:
            while self._status == PTYStatus.RUNNING:
                try:
                    data = await loop.run_in_executor(None, os.read, fd, READ_SIZE)
                except OSError:
                    # EIO once the child side of the PTY is gone
                    break

                if not data:
                    break

                text = decoder.decode(data)
                if text and self._on_output:
                    try:
                        self._on_output(text)
                    except Exception:
                        logger.exception(
                            "Error in on_output callback for session %s", self.id
                        )
        finally:
            # Only transition to EXITED if we weren't already killing
            if self._status == PTYStatus.RUNNING:
                self._exit_code = await self._reap()
                self._status = PTYStatus.EXITED
                self._close_fd()
                logger.info(
                    "PTY session %s exited (code=%s)", self.id, self._exit_code
                )
                if self._on_exit:
                    try:
                        self._on_exit(self, self._exit_code)
                    except Exception:
                        logger.exception(
                            "Error in on_exit callback for session %s", self.id
                        )

    async def _reap(self) -> int | None:
        if self._proc is None:
            return None
        code = self._proc.poll()
        if code is not None:
            return code
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self._proc.wait), timeout=2
            )
        except asyncio.TimeoutError:
            logger.debug("PTY session %s closed its terminal but is still running", self.id)
            return None

    def write(self, data: bytes) -> None:
        """Write all of ``data`` to the PTY input.

        Raises:
            OSError: If the PTY input channel is closed or the write fails.
        """
        if not self.writable:
            raise OSError(f"PTY session {self.id} is not writable")
        view = memoryview(data)
        while view:
            written = os.write(self._master_fd, view)
            view = view[written:]

    def interrupt(self) -> None:
        """Deliver Ctrl-C to the foreground program."""
        if not self.alive:
            return
        try:
            self.write(CTRL_C)
        except OSError:
            # Terminal input is gone; signal the group directly
            try:
                os.killpg(self._pgid, signal.SIGINT)
            except ProcessLookupError:
                logger.debug("Process group already gone: %d", self._pgid)

    def kill(self) -> None:
        """Kill the entire process tree."""
        if self._status not in (PTYStatus.RUNNING, PTYStatus.KILLING):
            return

        self._status = PTYStatus.KILLING
        try:
            os.killpg(self._pgid, signal.SIGKILL)
            logger.info("Killed PTY session %s (pgid=%d)", self.id, self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except OSError as e:
            logger.warning("Error killing PTY session %s: %s", self.id, e)

        # Wait for process to be reaped (avoids zombies)
        if self._proc is not None:
            try:
                self._exit_code = self._proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                logger.warning("PTY session %s did not exit after SIGKILL", self.id)

        self._close_fd()
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
        self._status = PTYStatus.KILLED

    def _close_fd(self) -> None:
        if self._master_fd < 0:
            return
        try:
            os.close(self._master_fd)
        except OSError:
            logger.debug("PTY fd %d already closed", self._master_fd)
        self._master_fd = -1

    @property
    def alive(self) -> bool:
        return self._status == PTYStatus.RUNNING

    @property
    def writable(self) -> bool:
        return self.alive and self._master_fd >= 0

    @property
    def status(self) -> PTYStatus:
        return self._status

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    def __del__(self) -> None:
        """Ensure cleanup on garbage collection."""
        if self._status in (PTYStatus.RUNNING, PTYStatus.KILLING):
            self.kill()


def spawn_pty(
    command: list[str],
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    interactive: bool = True,
) -> PTYSession:
    """Default process factory used by the session controller."""
    return PTYSession(
        command=list(command),
        cwd=cwd,
        env=dict(env or {}),
        title=command[0] if command else "",
        interactive=interactive,
    )

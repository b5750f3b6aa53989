"""Shared fixtures: an in-memory stand-in for the PTY process."""

from __future__ import annotations

import asyncio
import itertools
from typing import Callable

import pytest

_pids = itertools.count(1000)


class FakeProcess:
    """Behaves like PTYSession without a real child or terminal."""

    def __init__(
        self,
        command: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        interactive: bool = True,
    ) -> None:
        self.command = command
        self.cwd = cwd
        self.env = env or {}
        self.interactive = interactive
        self.writes: list[bytes] = []
        self.interrupts = 0
        self.killed = False
        self.start_error: OSError | None = None
        self.fail_next_write = False
        self.banner: str | None = None
        self.responder: Callable[[FakeProcess, str], None] | None = None
        self._pid = next(_pids)
        self._alive = False
        self._writable = True
        self._exit_code: int | None = None
        self._on_output: Callable[[str], None] | None = None
        self._on_exit: Callable[[FakeProcess, int | None], None] | None = None
        self._line = b""

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def writable(self) -> bool:
        return self._alive and self._writable

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    def set_on_output(self, callback: Callable[[str], None]) -> None:
        self._on_output = callback

    def set_on_exit(self, callback: Callable[[FakeProcess, int | None], None]) -> None:
        self._on_exit = callback

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self._alive = True
        if self.banner is not None:
            asyncio.get_running_loop().call_soon(self.emit, self.banner)

    def write(self, data: bytes) -> None:
        if not self.writable:
            raise OSError(5, "Input/output error")
        if self.fail_next_write:
            self.fail_next_write = False
            raise OSError(5, "Input/output error")
        self.writes.append(bytes(data))
        if data == b"\r":
            line = self._line.decode("utf-8")
            self._line = b""
            if self.responder is not None:
                # Reply after the writer has finished its turn of the loop
                asyncio.get_running_loop().call_soon(self.responder, self, line)
        else:
            self._line += data

    def interrupt(self) -> None:
        if self._alive:
            self.interrupts += 1

    def kill(self) -> None:
        self._alive = False
        self.killed = True

    # -- test helpers --

    @property
    def sent(self) -> bytes:
        return b"".join(self.writes)

    def close_input(self) -> None:
        self._writable = False

    def emit(self, text: str) -> None:
        if self._on_output is not None:
            self._on_output(text)

    def exit(self, code: int | None = 0) -> None:
        self._alive = False
        self._exit_code = code
        if self._on_exit is not None:
            self._on_exit(self, code)


class FakeSpawner:
    """Process factory recording every process it hands out."""

    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.start_error: OSError | None = None
        self.banner: str | None = None
        self.responder: Callable[[FakeProcess, str], None] | None = None

    def __call__(
        self,
        command: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        interactive: bool = True,
    ) -> FakeProcess:
        proc = FakeProcess(command, cwd=cwd, env=env, interactive=interactive)
        proc.start_error = self.start_error
        proc.banner = self.banner
        proc.responder = self.responder
        self.processes.append(proc)
        return proc

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()

"""PTY process management — the driven CLI and its screen buffer.

The interactive CLI runs in a managed PTY session with process group
isolation; its raw output is reduced to the current logical screen by
``ScreenBuffer``.
"""

from screenpilot.pty.buffer import ScreenBuffer
from screenpilot.pty.session import ProcessHandle, PTYSession, PTYStatus, spawn_pty

__all__ = [
    "PTYSession",
    "PTYStatus",
    "ProcessHandle",
    "ScreenBuffer",
    "spawn_pty",
]

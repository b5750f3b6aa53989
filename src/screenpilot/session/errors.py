"""Exceptions raised by the session core."""

from __future__ import annotations


class ScreenpilotError(Exception):
    """Base class for all screenpilot errors."""


class ProcessUnavailable(ScreenpilotError):
    """No live process to talk to, or the process could not be spawned."""


class NotWritable(ScreenpilotError):
    """The process is alive but its terminal input channel is closed."""


class StartupTimeout(ScreenpilotError):
    """The process never showed a ready prompt within the allowed time."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(
            f"Session startup timeout after {timeout:.1f}s - process may not be responding"
        )


class SendChunkFailure(ScreenpilotError):
    """A chunk write failed part way through a message."""

    def __init__(self, offset: int, total: int, reason: str) -> None:
        self.offset = offset
        self.total = total
        self.reason = reason
        super().__init__(f"Write failed at byte {offset}/{total}: {reason}")


class QueueItemNotFound(ScreenpilotError, KeyError):
    """No queue item has the given id."""

    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Queue item not found: {item_id}")

    def __str__(self) -> str:
        return self.args[0]


class QueueItemLocked(ScreenpilotError):
    """The queue item is no longer pending and cannot be changed."""

    def __init__(self, item_id: str, status: str) -> None:
        self.item_id = item_id
        self.status = status
        super().__init__(f"Queue item {item_id} is {status} and cannot be modified")

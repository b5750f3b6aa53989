"""Queue items and chat turns."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

TEXT_PREVIEW_CHARS = 200
OUTPUT_PREVIEW_CHARS = 500


def _gen_id() -> str:
    return uuid.uuid4().hex[:12]


def _preview(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


class QueueStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    WAITING = "waiting"  # Deferred until wait_until


@dataclass
class QueueItem:
    """A request waiting for (or already given) its turn at the process."""

    text: str
    id: str = field(default_factory=_gen_id)
    status: QueueStatus = QueueStatus.PENDING
    timestamp: float = field(default_factory=time.time)
    output: str | None = None
    error: str | None = None
    processing_started_at: float | None = None
    completed_at: float | None = None
    wait_until: float | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == QueueStatus.PENDING

    def to_view(self) -> dict[str, Any]:
        """Public, size-bounded view for observers."""
        return {
            "id": self.id,
            "text": _preview(self.text, TEXT_PREVIEW_CHARS),
            "status": self.status.value,
            "timestamp": self.timestamp,
            "output": _preview(self.output, OUTPUT_PREVIEW_CHARS) if self.output else None,
            "error": self.error,
            "wait_until": self.wait_until,
        }


@dataclass(frozen=True)
class ChatTurn:
    """One committed conversational turn. Never mutated after creation."""

    role: Literal["user", "assistant", "system"]
    content: str
    id: str = field(default_factory=_gen_id)
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def user(cls, content: str) -> ChatTurn:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> ChatTurn:
        return cls(role="assistant", content=content)

    @classmethod
    def system(cls, content: str) -> ChatTurn:
        return cls(role="system", content=content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }


__all__ = ["ChatTurn", "QueueItem", "QueueStatus"]

"""Transcript derivation — carving chat turns out of a repainting screen.

The driven CLI has no structured output channel; all we get is a screen
that is redrawn as the reply streams in. A reply is considered finished
when the screen shows the CLI's input prompt again. At that point the
plain-text screen becomes an assistant turn.

This is a heuristic. Prompt styles differ between CLIs and versions, so
the matchers are configurable. A miss leaves the request in flight until a
later screen matches, or until the session is interrupted or reset.

Repeats are dropped: a ready screen equal to the last committed reply, or
unchanged since the request was sent, is not committed. A request whose
reply redraws exactly the previous screen (the same prompt sent twice, as
after ``duplicate``) therefore also stays in flight until a reset.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Iterable, Protocol

from screenpilot.config import TranscriptConfig
from screenpilot.model import ChatTurn
from screenpilot.render.ansi import strip_ansi

logger = logging.getLogger(__name__)


class ReadyMatcher(Protocol):
    def matches(self, screen: str) -> bool: ...


class RegexMatcher:
    """Matches a regex against the raw screen, or the ANSI-stripped one."""

    def __init__(self, pattern: str, plain: bool = False) -> None:
        self.pattern = re.compile(pattern)
        self.plain = plain

    def matches(self, screen: str) -> bool:
        text = strip_ansi(screen).rstrip() if self.plain else screen
        return self.pattern.search(text) is not None

    def __repr__(self) -> str:
        kind = "plain" if self.plain else "raw"
        return f"RegexMatcher({self.pattern.pattern!r}, {kind})"


def build_matchers(config: TranscriptConfig) -> list[ReadyMatcher]:
    """Raw-screen matchers first, then plain-text ones."""
    matchers: list[ReadyMatcher] = [RegexMatcher(p) for p in config.ready_patterns]
    matchers.extend(RegexMatcher(p, plain=True) for p in config.plain_ready_patterns)
    return matchers


def is_ready(screen: str, matchers: Iterable[ReadyMatcher]) -> bool:
    return any(m.matches(screen) for m in matchers)


class TranscriptDeriver:
    """Commits an assistant turn when a reply has finished rendering.

    The deriver is armed by ``expect_reply()`` right after a request has
    been written. While armed, every flushed screen is checked for a ready
    prompt. A ready screen is reduced to plain text and committed unless it
    is empty, identical to the previous commit, unchanged since the
    request was sent, or nothing but prompt decoration.
    """

    def __init__(
        self,
        chat: list[ChatTurn],
        matchers: list[ReadyMatcher],
        prompt_only_patterns: Iterable[str] = (),
        on_commit: Callable[[ChatTurn], None] | None = None,
    ) -> None:
        self._chat = chat
        self._matchers = matchers
        self._prompt_only = [re.compile(p) for p in prompt_only_patterns]
        self._on_commit = on_commit
        self._armed = False
        self._baseline: str | None = None
        self._last_snapshot: str | None = None

    @classmethod
    def from_config(
        cls,
        chat: list[ChatTurn],
        config: TranscriptConfig,
        on_commit: Callable[[ChatTurn], None] | None = None,
    ) -> TranscriptDeriver:
        return cls(
            chat,
            build_matchers(config),
            config.prompt_only_patterns,
            on_commit=on_commit,
        )

    @property
    def matchers(self) -> list[ReadyMatcher]:
        return self._matchers

    @property
    def armed(self) -> bool:
        return self._armed

    def expect_reply(self, screen: str = "") -> None:
        """Arm for the next reply. ``screen`` is the screen at send time."""
        self._armed = True
        self._baseline = _clean(screen) if screen else None

    def disarm(self) -> None:
        self._armed = False
        self._baseline = None

    def reset(self) -> None:
        """Forget the dedup snapshot and stop waiting for a reply."""
        self.disarm()
        self._last_snapshot = None

    def observe(self, screen: str) -> ChatTurn | None:
        """Check one flushed screen; return the committed turn, if any."""
        if not self._armed:
            return None
        if not is_ready(screen, self._matchers):
            return None

        content = _clean(screen)
        if not content:
            return None
        if content == self._last_snapshot or content == self._baseline:
            return None
        if self._is_prompt_only(content):
            logger.debug("Ignoring prompt-only screen")
            return None

        turn = ChatTurn.assistant(content)
        self._chat.append(turn)
        self._last_snapshot = content
        self.disarm()
        logger.debug("Committed assistant turn %s (%d chars)", turn.id, len(content))
        if self._on_commit:
            self._on_commit(turn)
        return turn

    def _is_prompt_only(self, content: str) -> bool:
        if not self._prompt_only:
            return False
        lines = [line.strip() for line in content.splitlines() if line.strip()]
        return all(any(p.search(line) for p in self._prompt_only) for line in lines)


def _clean(screen: str) -> str:
    return strip_ansi(screen).strip()

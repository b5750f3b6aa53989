"""Screen buffer — raw PTY output reduced to the current logical screen."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable

from screenpilot.config import DEFAULT_CLEAR_SCREEN_MARKERS
from screenpilot.render.ansi import strip_ansi

logger = logging.getLogger(__name__)

MAX_BUFFER = 100_000
# Share of MAX_BUFFER kept when the cap is exceeded
TRIM_RATIO = 0.75
CLEAR_SCREEN_LOG_DEBOUNCE = 1.0


class ScreenBuffer:
    """Thread-safe accumulator for raw terminal output.

    Interactive CLIs repaint their whole visible state instead of emitting
    diffs, so "everything since the last clear-screen sequence" is a good
    stand-in for what the terminal currently shows. Two views are kept:

    * **raw** — accumulated output, capped at ``max_size`` characters. When
      the cap is exceeded only the trailing 75% is kept.
    * **screen** — the suffix of ``raw`` that starts at the last
      clear-screen marker (all of ``raw`` if there is none).

    Once a marker is found, ``raw`` is collapsed to the screen so memory
    stays proportional to one repaint.
    """

    def __init__(
        self,
        max_size: int = MAX_BUFFER,
        clear_markers: Iterable[str] | None = None,
    ) -> None:
        self._max_size = max_size
        self._markers = tuple(clear_markers or DEFAULT_CLEAR_SCREEN_MARKERS)
        self._raw = ""
        self._screen = ""
        self._lock = threading.Lock()
        self._last_append_at: float | None = None
        # Debounced logging of clear-screen detection
        self._last_clear_log = 0.0
        self._clear_log_count = 0

    def append(self, fragment: str) -> str:
        """Append a fragment of output and return the recomputed screen."""
        with self._lock:
            self._raw += fragment
            self._last_append_at = time.monotonic()

            if len(self._raw) > self._max_size:
                keep = int(self._max_size * TRIM_RATIO)
                logger.debug(
                    "Buffer too large (%d chars), keeping last %d",
                    len(self._raw),
                    keep,
                )
                self._raw = self._raw[-keep:]

            # Markers can straddle fragments, so search the whole buffer
            index = self._last_marker_index(self._raw)
            if index >= 0:
                self._log_clear_screen()
                self._raw = self._raw[index:]
            self._screen = self._raw
            return self._screen

    def _last_marker_index(self, text: str) -> int:
        last = -1
        for marker in self._markers:
            last = max(last, text.rfind(marker))
        return last

    def _log_clear_screen(self) -> None:
        now = time.monotonic()
        if now - self._last_clear_log >= CLEAR_SCREEN_LOG_DEBOUNCE:
            if self._clear_log_count:
                logger.debug(
                    "Clear screen detected - reset screen buffer (%d times in last second)",
                    self._clear_log_count + 1,
                )
            else:
                logger.debug("Clear screen detected - reset screen buffer")
            self._last_clear_log = now
            self._clear_log_count = 0
        else:
            self._clear_log_count += 1

    @property
    def raw(self) -> str:
        """All retained raw output."""
        with self._lock:
            return self._raw

    @property
    def screen(self) -> str:
        """Raw text of the current logical screen (ANSI preserved)."""
        with self._lock:
            return self._screen

    @property
    def plain(self) -> str:
        """Current screen with ANSI codes and carriage returns removed."""
        return strip_ansi(self.screen)

    def tail(self, n: int = 5) -> list[str]:
        """Last ``n`` non-empty lines of the plain screen."""
        lines = [line for line in self.plain.split("\n") if line.strip()]
        return lines[-n:]

    @property
    def last_append_at(self) -> float | None:
        """Monotonic time of the last append, or None if empty since clear."""
        with self._lock:
            return self._last_append_at

    def clear(self) -> None:
        """Drop all retained output."""
        with self._lock:
            self._raw = ""
            self._screen = ""
            self._last_append_at = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._raw)

"""ANSI-to-styled-text rendering shared by every output consumer.

The renderer understands just enough of the terminal protocol to show a
captured screen faithfully:

* SGR styling: reset, bold, dim, italic, reverse video and 256-colour
  foreground (``ESC[38;5;Nm``) through a fixed palette.
* Carriage-return overwrite: within a line only the text after the last
  ``\\r`` survives, which is how in-place progress updates look on a real
  terminal.

Every other control sequence is dropped. Literal text is always escaped for
the target markup language before it is wrapped in style tags, so screen
content can never be interpreted as markup by a consumer.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, replace

from rich.markup import escape
from rich.text import Text

# Any CSI sequence (private-mode ``?`` parameters included).
_CSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
# Splits a line into text and SGR sequences, keeping the sequences.
_SGR_SPLIT_RE = re.compile(r"(\x1b\[[0-9;]*m)")
# OSC (window title etc.), charset designation, and two-byte escapes.
_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_ESC_MISC_RE = re.compile(r"\x1b[()][0-9A-Za-z]|\x1b[=>c78]")

_DEFAULT_COLOR = "#ffffff"
_REVERSE_FG = "#000000"
_REVERSE_BG = "#ffffff"


def _build_palette() -> tuple[str, ...]:
    """The xterm 256-colour palette as ``#rrggbb`` strings."""
    base = [
        "#000000", "#cd0000", "#00cd00", "#cdcd00", "#0000ee", "#cd00cd", "#00cdcd", "#e5e5e5",
        "#7f7f7f", "#ff0000", "#00ff00", "#ffff00", "#5c5cff", "#ff00ff", "#00ffff", "#ffffff",
    ]
    steps = (0, 95, 135, 175, 215, 255)
    cube = [
        f"#{steps[r]:02x}{steps[g]:02x}{steps[b]:02x}"
        for r in range(6)
        for g in range(6)
        for b in range(6)
    ]
    grays = [f"#{v:02x}{v:02x}{v:02x}" for v in range(8, 248, 10)]
    return tuple(base + cube + grays)


PALETTE_256 = _build_palette()


@dataclass(frozen=True)
class Style:
    """Style accumulator state. Frozen so spans can share instances."""

    color: str | None = None
    bold: bool = False
    italic: bool = False
    dim: bool = False
    reverse: bool = False

    @property
    def plain(self) -> bool:
        return self == _PLAIN


_PLAIN = Style()


@dataclass(frozen=True)
class StyledSpan:
    """A run of literal text sharing one style."""

    text: str
    style: Style = _PLAIN


def apply_sgr(style: Style, params: str) -> Style:
    """Fold the parameters of one SGR sequence into ``style``.

    Unrecognized codes are ignored.
    """
    codes = [int(c) for c in params.split(";") if c.isdigit()]
    if not codes:
        # ESC[m is a reset
        return _PLAIN

    i = 0
    while i < len(codes):
        code = codes[i]
        if code == 0:
            style = _PLAIN
        elif code == 1:
            style = replace(style, bold=True)
        elif code == 2:
            style = replace(style, dim=True)
        elif code == 3:
            style = replace(style, italic=True)
        elif code == 7:
            style = replace(style, reverse=True)
        elif code == 22:
            style = replace(style, bold=False, dim=False)
        elif code == 23:
            style = replace(style, italic=False)
        elif code == 27:
            style = replace(style, reverse=False)
        elif code == 39:
            style = replace(style, color=None)
        elif code == 38 and i + 2 < len(codes) and codes[i + 1] == 5:
            index = codes[i + 2]
            color = PALETTE_256[index] if 0 <= index < len(PALETTE_256) else _DEFAULT_COLOR
            style = replace(style, color=color)
            i += 2
        elif code == 48 and i + 2 < len(codes) and codes[i + 1] == 5:
            # Background colours are not rendered, but their index must be skipped
            i += 2
        i += 1
    return style


def _drop_non_visual(text: str) -> str:
    text = _OSC_RE.sub("", text)
    return _ESC_MISC_RE.sub("", text)


def _overwrite_carriage_returns(line: str) -> str:
    # A trailing \r is the CR of a CRLF line ending, not an overwrite.
    # Otherwise only what follows the last \r is still visible.
    return line.rstrip("\r").rsplit("\r", 1)[-1]


def _line_spans(line: str, style: Style) -> tuple[list[StyledSpan], Style]:
    spans: list[StyledSpan] = []
    for part in _SGR_SPLIT_RE.split(line):
        if not part:
            continue
        if part.startswith("\x1b[") and part.endswith("m"):
            style = apply_sgr(style, part[2:-1])
            continue
        visible = _CSI_RE.sub("", part).replace("\x1b", "")
        if visible:
            if spans and spans[-1].style == style:
                spans[-1] = StyledSpan(spans[-1].text + visible, style)
            else:
                spans.append(StyledSpan(visible, style))
    return spans, style


def render_spans(text: str) -> list[list[StyledSpan]]:
    """Render ``text`` into one list of styled spans per output line.

    Each line starts from an unstyled state, matching how the screen is
    redrawn line by line.
    """
    lines: list[list[StyledSpan]] = []
    for raw_line in _drop_non_visual(text).split("\n"):
        spans, _ = _line_spans(_overwrite_carriage_returns(raw_line), _PLAIN)
        lines.append(spans)
    return lines


def strip_ansi(text: str) -> str:
    """Strip ANSI escape sequences and carriage returns from text."""
    text = _drop_non_visual(text)
    text = _CSI_RE.sub("", text)
    return text.replace("\r", "")


# ---------------------------------------------------------------------------
# Output formats
# ---------------------------------------------------------------------------


def _css(style: Style) -> str:
    parts = []
    if style.reverse:
        parts.append(f"background-color: {style.color or _REVERSE_BG};")
        parts.append(f"color: {_REVERSE_FG};")
    elif style.color:
        parts.append(f"color: {style.color};")
    if style.bold:
        parts.append("font-weight: bold;")
    if style.italic:
        parts.append("font-style: italic;")
    if style.dim:
        parts.append("opacity: 0.6;")
    return " ".join(parts)


def to_html(text: str) -> str:
    """Render to HTML ``<span>`` markup for web clients."""
    out_lines = []
    for spans in render_spans(text):
        chunks = []
        for span in spans:
            escaped = html.escape(span.text)
            if span.style.plain:
                chunks.append(escaped)
            else:
                chunks.append(f'<span style="{_css(span.style)}">{escaped}</span>')
        out_lines.append("".join(chunks))
    return "\n".join(out_lines)


def _rich_style(style: Style) -> str:
    parts = []
    if style.bold:
        parts.append("bold")
    if style.dim:
        parts.append("dim")
    if style.italic:
        parts.append("italic")
    if style.reverse:
        parts.append("reverse")
    if style.color:
        parts.append(style.color)
    return " ".join(parts)


def to_markup(text: str) -> str:
    """Render to Rich console markup (``[bold #ff0000]...[/]``)."""
    out_lines = []
    for spans in render_spans(text):
        chunks = []
        for span in spans:
            escaped = escape(span.text)
            if span.style.plain:
                chunks.append(escaped)
            else:
                chunks.append(f"[{_rich_style(span.style)}]{escaped}[/]")
        out_lines.append("".join(chunks))
    return "\n".join(out_lines)


def to_rich_text(text: str) -> Text:
    """Render to a ``rich.text.Text`` (no markup parsing involved)."""
    result = Text()
    for n, spans in enumerate(render_spans(text)):
        if n:
            result.append("\n")
        for span in spans:
            result.append(span.text, style=_rich_style(span.style) or None)
    return result

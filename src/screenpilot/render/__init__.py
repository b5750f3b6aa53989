"""Rendering of raw terminal output for display surfaces."""

from screenpilot.render.ansi import (
    PALETTE_256,
    Style,
    StyledSpan,
    render_spans,
    strip_ansi,
    to_html,
    to_markup,
    to_rich_text,
)

__all__ = [
    "PALETTE_256",
    "Style",
    "StyledSpan",
    "render_spans",
    "strip_ansi",
    "to_html",
    "to_markup",
    "to_rich_text",
]

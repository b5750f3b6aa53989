"""Configuration — Pydantic models for screenpilot settings."""

from __future__ import annotations

import os
import shlex
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field

DEFAULT_CLEAR_SCREEN_MARKERS = [
    "\x1b[2J",
    "\x1b[3J",
    "\x1b[H\x1b[2J",
    "\x1bc",
]

# Raw-screen patterns that mean "the CLI is idle and waiting for input".
DEFAULT_READY_PATTERNS = [
    r"\? for shortcuts",
    r"\x1b\[2m\x1b\[38;5;244m│\x1b\[39m\x1b\[22m\s>",
]

# Same idea, but matched against the ANSI-stripped screen.
DEFAULT_PLAIN_READY_PATTERNS = [
    r">\s*$",
]

# Lines that carry no reply content on their own.
DEFAULT_PROMPT_ONLY_PATTERNS = [
    r"^\? for shortcuts$",
    r"^>\s*$",
]


class SessionConfig(BaseModel):
    """How the external process is spawned and fed."""

    command: list[str] = Field(
        default_factory=lambda: ["claude"],
        description="Command and arguments of the interactive CLI to drive",
    )
    cwd: str | None = Field(default=None, description="Working directory (default: cwd)")
    env: dict[str, str] = Field(default_factory=dict)
    chunk_size: int = Field(default=1024, gt=0, description="Bytes per input write")
    chunk_delay: float = Field(
        default=0.1, ge=0, description="Seconds to pause after each chunk"
    )
    submit: str = Field(default="\r", description="Line-submit terminator")
    ready_timeout: float = Field(
        default=10.0, gt=0, description="Seconds to wait for the CLI to become ready"
    )
    optimistic_ready_after: float | None = Field(
        default=None,
        ge=0,
        description=(
            "Treat a live process as ready after this many seconds even without a "
            "ready prompt. Defaults to half of ready_timeout."
        ),
    )

    @property
    def optimistic_grace(self) -> float:
        if self.optimistic_ready_after is not None:
            return self.optimistic_ready_after
        return self.ready_timeout / 2


class OutputConfig(BaseModel):
    """Screen reconstruction and broadcast tuning."""

    throttle: float = Field(
        default=0.5, gt=0, description="Minimum seconds between output broadcasts"
    )
    auto_clear: float = Field(
        default=30.0, gt=0, description="Clear the screen after this many idle seconds"
    )
    max_buffer: int = Field(
        default=100_000, gt=0, description="Maximum characters of raw output retained"
    )
    clear_screen_markers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CLEAR_SCREEN_MARKERS)
    )


class TranscriptConfig(BaseModel):
    """Heuristics used to carve chat turns out of the screen."""

    ready_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_READY_PATTERNS))
    plain_ready_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PLAIN_READY_PATTERNS)
    )
    prompt_only_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PROMPT_ONLY_PATTERNS)
    )


class ScreenpilotConfig(BaseModel):
    """Top-level screenpilot configuration."""

    session: SessionConfig = Field(default_factory=SessionConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    transcript: TranscriptConfig = Field(default_factory=TranscriptConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> ScreenpilotConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            SCREENPILOT_COMMAND                 - Command line of the CLI to drive (shell-quoted)
            SCREENPILOT_THROTTLE_MS             - Minimum interval between output broadcasts
            SCREENPILOT_AUTO_CLEAR_MS           - Idle time before the screen is auto-cleared
            SCREENPILOT_MAX_BUFFER              - Raw output cap in characters
            SCREENPILOT_READY_TIMEOUT           - Seconds to wait for the CLI to become ready
            SCREENPILOT_OPTIMISTIC_READY_AFTER  - Seconds after which a live CLI counts as ready
        """
        # .env of the working directory; its values win over stale shell exports
        load_dotenv(find_dotenv(usecwd=True), override=True)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            import json

            with open(config_path) as f:
                config_data = json.load(f)

        session = config_data.get("session", {})
        output = config_data.get("output", {})

        env_command = os.environ.get("SCREENPILOT_COMMAND")
        if env_command:
            session["command"] = shlex.split(env_command)

        env_ready_timeout = os.environ.get("SCREENPILOT_READY_TIMEOUT")
        if env_ready_timeout:
            session["ready_timeout"] = float(env_ready_timeout)

        env_optimistic = os.environ.get("SCREENPILOT_OPTIMISTIC_READY_AFTER")
        if env_optimistic:
            session["optimistic_ready_after"] = float(env_optimistic)

        env_throttle = os.environ.get("SCREENPILOT_THROTTLE_MS")
        if env_throttle:
            output["throttle"] = int(env_throttle) / 1000

        env_auto_clear = os.environ.get("SCREENPILOT_AUTO_CLEAR_MS")
        if env_auto_clear:
            output["auto_clear"] = int(env_auto_clear) / 1000

        env_max_buffer = os.environ.get("SCREENPILOT_MAX_BUFFER")
        if env_max_buffer:
            output["max_buffer"] = int(env_max_buffer)

        if session:
            config_data["session"] = session
        if output:
            config_data["output"] = output

        return cls.model_validate(config_data)

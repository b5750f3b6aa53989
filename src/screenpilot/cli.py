"""CLI entry point for screenpilot."""

from __future__ import annotations

import asyncio
import logging
import os

import typer

from screenpilot.config import ScreenpilotConfig

app = typer.Typer(
    name="screenpilot",
    help="Drive an interactive terminal CLI through a request queue.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_config(config_file: str | None, command: list[str] | None) -> ScreenpilotConfig:
    config = ScreenpilotConfig.load(config_file)
    if command:
        config.session.command = list(command)
    return config


@app.command()
def run(
    command: list[str] | None = typer.Argument(
        None,
        help="CLI to drive, with its arguments (use -- before its own options).",
    ),
    message: list[str] | None = typer.Option(
        None,
        "--message",
        "-m",
        help="Request to send. Repeat to queue several.",
    ),
    file: str | None = typer.Option(
        None,
        "--file",
        "-f",
        help="Send the contents of this file as one request.",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Send requests to a CLI and print the replies (plain output)."""
    setup_logging(verbose)

    requests = list(message or [])
    if file:
        if not os.path.isfile(file):
            typer.echo(f"Error: File not found: {file}", err=True)
            raise typer.Exit(1)
        with open(file, encoding="utf-8") as f:
            requests.append(f.read())
    if not requests:
        typer.echo("Error: Nothing to send (use --message or --file)", err=True)
        raise typer.Exit(1)

    config = _load_config(config_file, command)

    typer.echo("screenpilot v0.1.0")
    typer.echo(f"Command: {' '.join(config.session.command)}")
    typer.echo(f"Requests: {len(requests)}")
    typer.echo("---")

    try:
        asyncio.run(_run_session(config, requests))
    except KeyboardInterrupt:
        typer.echo("\nInterrupted", err=True)
        raise typer.Exit(130)


async def _run_session(config: ScreenpilotConfig, requests: list[str]) -> None:
    """Run the queue to completion with plain CLI output."""
    from screenpilot.session.orchestrator import SessionOrchestrator
    from screenpilot.session.wire import EventType

    orchestrator = SessionOrchestrator(config)
    wire = orchestrator.wire
    queue = wire.subscribe()

    # --- Wire consumer (async background task) ---
    async def _consume_wire() -> None:
        while True:
            event = await queue.get()
            if event is None:
                break

            d = event.data

            if event.type == EventType.CHAT_TURN:
                role = d.get("role", "?")
                if role == "assistant":
                    print(f"\n[assistant]\n{d.get('content', '')}\n", flush=True)
                elif role == "system":
                    print(f"[system] {d.get('content', '')}", flush=True)
                else:
                    print(f"[you] {d.get('content', '')}", flush=True)

            elif event.type == EventType.STATUS_CHANGED:
                print(f"  (session: {d.get('state')})", flush=True)

            elif event.type == EventType.SESSION_EXIT:
                print(
                    f"[process exited with code {d.get('exit_code')}]",
                    flush=True,
                )
                last_output = d.get("last_output", "")
                if last_output:
                    print(last_output, flush=True)

    consumer_task = asyncio.create_task(_consume_wire())

    try:
        for text in requests:
            orchestrator.enqueue(text)
        await orchestrator.queue.wait_drained()
    finally:
        # Signal wire close and wait for consumer to finish
        await orchestrator.shutdown()
        await consumer_task

    counts = orchestrator.queue.counts()
    print(f"\n---\nDone. Completed: {counts['completed']}, failed: {counts['error']}")


@app.command()
def tui(
    command: list[str] | None = typer.Argument(
        None,
        help="CLI to drive, with its arguments (use -- before its own options).",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Drive a CLI from the interactive TUI."""
    # Don't use setup_logging() here: a stderr handler corrupts the Textual
    # display. The app installs its own handler that feeds the status bar.
    logging.getLogger().setLevel(logging.DEBUG if verbose else logging.INFO)
    for h in logging.getLogger().handlers[:]:
        logging.getLogger().removeHandler(h)

    config = _load_config(config_file, command)

    from screenpilot.session.orchestrator import SessionOrchestrator
    from screenpilot.tui.app import ScreenpilotApp

    tui_app = ScreenpilotApp(SessionOrchestrator(config))
    tui_app.run()


def main() -> None:
    app()


if __name__ == "__main__":
    main()

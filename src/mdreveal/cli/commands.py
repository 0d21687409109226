"""CLI command implementations"""

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
import yaml

from mdreveal.config import Settings, load_config
from mdreveal.core.export import build_blocks_json, build_text
from mdreveal.core.models import DisplayBlock
from mdreveal.core.parser.incremental import IncrementalParser
from mdreveal.core.pipeline import StreamSession


def _fail(msg: str, cause: Exception = None) -> None:
    """Print a user-friendly error to stderr and exit 1."""
    typer.echo(f"Error: {msg}", err=True)
    if cause:
        typer.echo(f"  {cause}", err=True)
    raise typer.Exit(1)


def _settings(overrides: dict = None, verbose: bool = False) -> Settings:
    """Load config with standard CLI error handling and set up logging."""
    try:
        settings = load_config(overrides=overrides)
    except ValueError as e:
        _fail(str(e))
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level,
        format="%(levelname)s %(name)s: %(message)s",
    )
    return settings


def _read(path: str) -> str:
    p = Path(path)
    if not p.is_file():
        _fail(f"No such file: {path}")
    try:
        return p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        _fail(f"Cannot read {path}", e)


class _TerminalView:
    """Print revealed text as it grows; one block at a time, in order."""

    def __init__(self):
        self.printed: dict[str, str] = {}
        self.done: set[str] = set()

    def __call__(self, blocks: list[DisplayBlock]) -> None:
        for block in blocks:
            if block.id in self.done:
                continue
            if block.display_node is None:
                break
            text = build_text(block.display_node)
            shown = self.printed.get(block.id)
            if shown is None:
                if self.printed:
                    typer.echo("\n\n", nl=False)
                shown = self.printed[block.id] = ""
            if text.startswith(shown):
                typer.echo(text[len(shown):], nl=False)
                self.printed[block.id] = text
            elif block.is_display_complete:
                # Markup reinterpreted mid-block; print the settled text on its own line
                typer.echo("\n" + text, nl=False)
                self.printed[block.id] = text
            if not block.is_display_complete:
                break
            self.done.add(block.id)


def parse_cmd(
    path: Annotated[str, typer.Argument(help="Markdown file to parse")],
    pending: Annotated[bool, typer.Option("--pending", help="Parse as an unfinished stream; keep the tail pending")] = False,
    full: Annotated[bool, typer.Option("--full", help="Dump complete block ASTs instead of summaries")] = False,
    preset: Annotated[Optional[str], typer.Option("--preset", help="MarkdownIt preset name")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
    ):
    """Split a Markdown file into blocks and print them as JSON."""
    settings = _settings(overrides={"preset": preset}, verbose=verbose)
    text = _read(path)
    parser = IncrementalParser(settings.parser_options())
    if pending:
        parser.append(text)
    else:
        parser.render(text)
    typer.echo(build_blocks_json(parser.get_blocks(), full=full))


def stream_cmd(
    path: Annotated[str, typer.Argument(help="Markdown file to stream")],
    chunk_size: Annotated[Optional[int], typer.Option("--chunk-size", help="Characters per simulated chunk")] = None,
    chunk_delay: Annotated[Optional[float], typer.Option("--chunk-delay", help="Seconds between chunks")] = None,
    chars_per_tick: Annotated[Optional[str], typer.Option("--chars-per-tick", help="N, or MIN,MAX for a random pace")] = None,
    effect: Annotated[Optional[str], typer.Option("--effect", help="none, fade-in or typing")] = None,
    no_animate: Annotated[bool, typer.Option("--no-animate", help="Show each block in full as soon as it is parsed")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
    ):
    """Replay a Markdown file as a chunked stream with a live typewriter reveal."""
    settings = _settings(overrides={
        "chunk_size": chunk_size, "chunk_delay": chunk_delay,
        "chars_per_tick": chars_per_tick, "effect": "none" if no_animate else effect,
    }, verbose=verbose)
    text = _read(path)

    async def _run() -> None:
        session = StreamSession.create(
            settings.parser_options(),
            settings.transformer_options(),
            plugins=settings.plugin_registry(),
            on_change=_TerminalView(),
        )
        await session.stream(text, settings.chunk_size, settings.chunk_delay)
        session.transformer.destroy()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("\nInterrupted.", err=True)
        raise typer.Exit(130)
    typer.echo("")


def config_cmd():
    """Print the effective settings after config.yaml and MDREVEAL_* overrides."""
    settings = _settings()
    typer.echo(yaml.safe_dump(settings.model_dump(mode="json"), sort_keys=False).rstrip())

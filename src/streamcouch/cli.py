"""
streamcouch CLI - Command Line Interface.

Replicates one CouchDB database's change feed into MongoDB.

Commands:
    run     Follow the change feed and apply it to MongoDB
    status  Show the stored checkpoint for a stream
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from pathlib import Path

import typer
from rich.console import Console

from streamcouch import __version__
from streamcouch.config import Settings, load_settings
from streamcouch.connectors.couchdb import create_change_feed
from streamcouch.connectors.mongodb import create_applier
from streamcouch.core.engine import ReplicationEngine, ReplicationStats
from streamcouch.core.router import RoutingConfig
from streamcouch.errors import ConfigurationError, StreamCouchError, describe
from streamcouch.stores import create_sequence_store
from streamcouch.utils.display import (
    print_checkpoint,
    print_error,
    print_info,
    print_success,
    print_summary,
)
from streamcouch.utils.logger import setup_logging


# Create the Typer app
app = typer.Typer(
    name="streamcouch",
    help="Replicate a CouchDB change feed into MongoDB.",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]streamcouch[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """streamcouch - CouchDB to MongoDB change replication."""


def _load_or_exit(config_file: Path) -> Settings:
    try:
        return load_settings(config_file)
    except ConfigurationError as e:
        print_error(describe(e))
        raise typer.Exit(e.exit_code) from e


# =============================================================================
# RUN Command
# =============================================================================
@app.command()
def run(
    config_file: Path = typer.Option(
        Path("config.toml"),
        "--config",
        "-c",
        help="Path to config file (TOML or JSON).",
    ),
    once: bool = typer.Option(
        False,
        "--once",
        help="Apply everything up to the current end of the feed, then exit.",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Skip the summary table.",
    ),
) -> None:
    """
    Follow the change feed and apply every change to MongoDB.

    Runs until interrupted (Ctrl+C / SIGTERM) or a fatal error occurs.

    Example:
        streamcouch run --config ./config.toml
    """
    settings = _load_or_exit(config_file)

    setup_logging(
        level=settings.logging.level,
        log_file=settings.logging.file,
        format_style=settings.logging.format,
    )

    stats, error = asyncio.run(_replicate(settings, infinite=not once))

    if stats is not None and not quiet:
        console.print()
        print_summary(stats)

    if error is not None:
        print_error(describe(error))
        raise typer.Exit(error.exit_code)

    print_success("Replication stopped cleanly.")


async def _replicate(
    settings: Settings,
    *,
    infinite: bool = True,
) -> tuple[ReplicationStats | None, StreamCouchError | None]:
    """Build the collaborators, run the engine and always release them."""
    store = None
    feed = None
    applier = None
    engine: ReplicationEngine | None = None
    loop = asyncio.get_running_loop()
    handled: list[signal.Signals] = []

    try:
        store = await create_sequence_store(settings)
        feed = create_change_feed(settings, infinite=infinite)
        applier = create_applier(settings)

        engine = ReplicationEngine(
            store=store,
            feed=feed,
            applier=applier,
            routing=RoutingConfig.from_settings(settings),
            stream_key=settings.get_sequence_store_key(),
            retry=settings.retry,
            expect_infinite=infinite,
        )

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, engine.request_stop)
                handled.append(sig)

        return await engine.run(), None

    except StreamCouchError as e:
        return (engine.stats if engine else None), e

    finally:
        for sig in handled:
            loop.remove_signal_handler(sig)
        if applier is not None:
            await applier.close()
        if feed is not None:
            await feed.close()
        if store is not None:
            await store.close()


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    config_file: Path = typer.Option(
        Path("config.toml"),
        "--config",
        "-c",
        help="Path to config file (TOML or JSON).",
    ),
) -> None:
    """Show the stored checkpoint for the configured stream."""
    settings = _load_or_exit(config_file)

    try:
        seq = asyncio.run(_read_checkpoint(settings))
    except StreamCouchError as e:
        print_error(describe(e))
        raise typer.Exit(e.exit_code) from e

    print_checkpoint(settings, seq)
    if seq is None:
        print_info("No checkpoint stored. The next run starts from the beginning of the feed.")


async def _read_checkpoint(settings: Settings) -> str | None:
    store = await create_sequence_store(settings)
    try:
        return await store.get(settings.get_sequence_store_key())
    finally:
        await store.close()


if __name__ == "__main__":
    app()

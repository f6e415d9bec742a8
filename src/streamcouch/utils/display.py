"""
Rich Terminal Display Components.

Operator-facing output for the CLI:
- Status messages
- Checkpoint status table
- Run summary report
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

if TYPE_CHECKING:
    from streamcouch.config import Settings
    from streamcouch.core.engine import ReplicationStats


console = Console()


def print_summary(stats: ReplicationStats) -> None:
    """Print a summary table after the engine stops."""
    border = "red" if stats.error else "green"
    table = Table(title="Replication Summary", border_style=border)

    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Stream", stats.stream_key)
    table.add_row("Duration", format_duration(stats.duration_seconds))
    table.add_row("Events Received", f"{stats.events_received:,}")
    table.add_row("Events Applied", f"{stats.events_applied:,}")
    table.add_row("Design Docs Skipped", f"{stats.events_skipped:,}")
    table.add_row("Documents Upserted", f"{stats.documents_upserted:,}")
    table.add_row("  of which inserted", f"{stats.documents_inserted:,}")
    table.add_row("Documents Deleted", f"{stats.documents_deleted:,}")
    table.add_row("Average Speed", f"{stats.events_per_second:,.1f} events/s")
    table.add_row("Checkpoint", _format_seq(stats.last_seq))

    console.print(table)


def print_checkpoint(settings: Settings, seq: str | None) -> None:
    """Print where a stream will resume from."""
    table = Table(title="Checkpoint Status", border_style="blue")
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    table.add_row("Source", f"{settings.source_url.rstrip('/')}/{settings.source_database}")
    table.add_row("Destination Database", settings.mongodb_database)
    table.add_row(
        "Sequence Store",
        settings.sequence_store.value if settings.sequence_store else "[dim]not set[/dim]",
    )
    table.add_row("Stream Key", settings.get_sequence_store_key())
    table.add_row("Checkpoint", _format_seq(seq))

    console.print(table)


def _format_seq(seq: str | None) -> str:
    if seq is None:
        return "[dim]none (start from beginning)[/dim]"
    if len(seq) > 48:
        return escape(f"{seq[:45]}...")
    return escape(seq)


def format_duration(seconds: float) -> str:
    """Format seconds as a short human-readable string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red bold]Error:[/red bold] {escape(message)}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green bold]✓[/green bold] {escape(message)}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]ℹ[/blue] {escape(message)}")

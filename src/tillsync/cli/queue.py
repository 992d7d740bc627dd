"""
tillsync CLI - queue inspection and manual discard.
"""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from tillsync.cli.context import run_with_service
from tillsync.cli.errors import handle_error
from tillsync.core.sync.models import QueueEntry, SyncStatus
from tillsync.core.sync.service import SyncService

app = typer.Typer(
    name="queue",
    help="Inspect the sync queue",
    no_args_is_help=True,
)

console = Console()

STATUS_STYLES = {
    SyncStatus.PENDING: "white",
    SyncStatus.ERROR: "red",
    SyncStatus.CONFLICT: "yellow",
}


@app.command("list")
def list_entries(
    status: list[SyncStatus] | None = typer.Option(
        None,
        "--status",
        "-s",
        help="Only entries with this status (repeatable)",
    ),
) -> None:
    """
    List queued entries in the order they will be pushed.

    Examples:
        tillsync queue list
        tillsync queue list --status error
    """

    async def _list(service: SyncService) -> list[QueueEntry]:
        return service.list_entries(status or None)

    try:
        entries = run_with_service(_list)
    except Exception as e:
        raise typer.Exit(handle_error(e))

    if not entries:
        console.print("[dim]Queue is empty[/dim]")
        return

    table = Table(title="Sync Queue", border_style="cyan")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Entity")
    table.add_column("Op")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Next attempt", style="dim")
    table.add_column("Last error", overflow="fold")

    for entry in entries:
        style = STATUS_STYLES.get(entry.status, "white")
        table.add_row(
            entry.id,
            f"{entry.entity_type}/{entry.entity_id}",
            entry.operation.value,
            f"[{style}]{entry.status.value}[/{style}]",
            str(entry.attempts),
            entry.next_attempt_at.isoformat(timespec="seconds") if entry.next_attempt_at else "",
            entry.last_error or "",
        )

    console.print(table)
    console.print(f"[dim]Total entries: {len(entries)}[/dim]")


@app.command()
def discard(
    entry_id: str = typer.Argument(..., help="Queue entry ID (see: tillsync queue list)"),
) -> None:
    """
    Drop a failed entry and restore the record from the remote API.

    Only entries in the error state can be discarded.

    Examples:
        tillsync queue discard 3f2a9c1b7d4e4a0f9b1c2d3e4f5a6b7c
    """

    async def _discard(service: SyncService) -> QueueEntry:
        return await service.discard(entry_id)

    try:
        entry = run_with_service(_discard)
    except Exception as e:
        raise typer.Exit(handle_error(e))

    console.print(
        f"[green]✓[/green] Discarded {entry.operation.value} of "
        f"{entry.entity_type}/{entry.entity_id}"
    )

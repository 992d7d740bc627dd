"""
tillsync CLI - conflict listing and resolution.
"""

from __future__ import annotations

import json as json_module
from enum import Enum
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from tillsync.cli.context import run_with_service
from tillsync.cli.errors import ExitCode, handle_error, print_error
from tillsync.core.sync.models import ConflictResolution, QueueEntry, RemoteRecord
from tillsync.core.sync.resolver import differing_fields
from tillsync.core.sync.service import SyncService

app = typer.Typer(
    name="conflicts",
    help="List and resolve sync conflicts",
    no_args_is_help=True,
)

console = Console()


class UseChoice(str, Enum):
    """Short names accepted by --use."""

    LOCAL = "local"
    REMOTE = "remote"
    MERGE = "merge"


RESOLUTIONS = {
    UseChoice.LOCAL: ConflictResolution.USE_LOCAL,
    UseChoice.REMOTE: ConflictResolution.USE_REMOTE,
    UseChoice.MERGE: ConflictResolution.MERGE,
}


def _short(value: Any) -> str:
    text = json_module.dumps(value, sort_keys=True, default=str)
    return text if len(text) <= 40 else text[:37] + "..."


@app.command("list")
def list_conflicts() -> None:
    """
    Show conflicted entries and the fields that differ.

    Examples:
        tillsync conflicts list
    """

    async def _list(service: SyncService) -> list[QueueEntry]:
        return service.list_conflicts()

    try:
        entries = run_with_service(_list)
    except Exception as e:
        raise typer.Exit(handle_error(e))

    if not entries:
        console.print("[green]No conflicts[/green]")
        return

    for entry in entries:
        remote = RemoteRecord.from_snapshot(entry.remote_snapshot) if entry.remote_snapshot else None
        table = Table(
            title=f"{entry.entity_type}/{entry.entity_id}  ({entry.id})",
            border_style="yellow",
        )
        table.add_column("Field", style="cyan")
        table.add_column("Local")
        table.add_column("Remote")

        local = entry.payload or {}
        remote_fields = remote.fields if remote else {}
        for key in differing_fields(local, remote_fields):
            table.add_row(
                key,
                _short(local.get(key)),
                _short(remote_fields.get(key)) if key in remote_fields else "[dim]-[/dim]",
            )
        console.print(table)
        if remote is not None:
            console.print(f"[dim]Remote updated at {remote.updated_at.isoformat()}[/dim]")

    console.print(f"\n[yellow]{len(entries)} conflict(s)[/yellow]. Resolve with:")
    console.print("  tillsync conflicts resolve ID --use local|remote|merge")


@app.command()
def resolve(
    entry_id: str = typer.Argument(..., help="Conflicted entry ID"),
    use: UseChoice = typer.Option(
        ...,
        "--use",
        "-u",
        help="Keep the local change, take the remote copy, or push a merged payload",
    ),
    payload: str | None = typer.Option(
        None,
        "--payload",
        "-p",
        help="JSON object with the merged fields (required with --use merge)",
    ),
) -> None:
    """
    Resolve a conflict.

    Examples:
        tillsync conflicts resolve ID --use local
        tillsync conflicts resolve ID --use remote
        tillsync conflicts resolve ID --use merge --payload '{"price": 120}'
    """
    merged: dict[str, Any] | None = None
    if use == UseChoice.MERGE:
        if payload is None:
            print_error("--use merge requires --payload", solution="--payload '{\"field\": \"value\"}'")
            raise typer.Exit(ExitCode.USER_ERROR)
        try:
            merged = json_module.loads(payload)
        except json_module.JSONDecodeError as e:
            print_error(f"Invalid JSON payload: {e}")
            raise typer.Exit(ExitCode.USER_ERROR)
        if not isinstance(merged, dict):
            print_error("Merged payload must be a JSON object")
            raise typer.Exit(ExitCode.USER_ERROR)

    async def _resolve(service: SyncService) -> QueueEntry | None:
        return service.resolve_conflict(entry_id, RESOLUTIONS[use], merged)

    try:
        entry = run_with_service(_resolve)
    except Exception as e:
        raise typer.Exit(handle_error(e))

    if entry is None:
        console.print("[green]✓[/green] Remote copy accepted; entity is synced")
    else:
        console.print(
            f"[green]✓[/green] {entry.entity_type}/{entry.entity_id} queued for the next sync"
        )

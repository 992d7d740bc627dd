"""
tillsync CLI - status, sync and retry commands.
"""

from __future__ import annotations

import json as json_module

import typer
from rich.console import Console
from rich.table import Table

from tillsync.cli.context import run_with_service
from tillsync.cli.errors import ExitCode, handle_error, print_error
from tillsync.core.sync.models import SyncResult
from tillsync.core.sync.service import SyncService

console = Console()


def status(
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output status as JSON",
    ),
) -> None:
    """
    Show connectivity, queue counts and the last successful sync.

    Examples:
        tillsync status
        tillsync status --json
    """

    async def _status(service: SyncService) -> dict[str, object]:
        current = service.get_status()
        last = service.last_synced_at()
        return {
            "is_online": current.is_online,
            "is_syncing": current.is_syncing,
            "device_id": current.device_id,
            "last_synced_at": last.isoformat() if last else None,
            "counts": service.counts(),
        }

    try:
        data = run_with_service(_status)
    except Exception as e:
        raise typer.Exit(handle_error(e))

    if json_output:
        console.print(json_module.dumps(data, indent=2))
        return

    counts = data["counts"]
    assert isinstance(counts, dict)

    table = Table(title="Sync Status", border_style="cyan", show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Device", str(data["device_id"]))
    table.add_row("Connectivity", "online" if data["is_online"] else "[yellow]offline[/yellow]")
    table.add_row("Last sync", str(data["last_synced_at"] or "never"))
    table.add_row("Pending", str(counts.get("pending", 0)))
    table.add_row("Failed", f"[red]{counts['error']}[/red]" if counts.get("error") else "0")
    table.add_row(
        "Conflicts",
        f"[yellow]{counts['conflict']}[/yellow]" if counts.get("conflict") else "0",
    )
    console.print(table)


def _print_result(result: SyncResult) -> None:
    table = Table(title="Sync Result", border_style="cyan")
    table.add_column("Synced", justify="right", style="green")
    table.add_column("Pulled", justify="right")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Conflicts", justify="right", style="yellow")
    table.add_column("Skipped", justify="right", style="dim")
    table.add_row(
        str(result.synced),
        str(result.pulled),
        str(result.failed),
        str(result.conflicted),
        str(result.skipped),
    )
    console.print(table)

    if result.errors:
        errors = Table(title="Errors", border_style="red")
        errors.add_column("Entity", style="cyan")
        errors.add_column("Kind")
        errors.add_column("Message")
        for error in result.errors:
            entity = error.entity_type
            if error.entity_id:
                entity = f"{entity}/{error.entity_id}"
            errors.add_row(entity, error.kind.value, error.message)
        console.print(errors)


def sync(
    no_pull: bool = typer.Option(
        False,
        "--no-pull",
        help="Only push local changes; skip pulling remote changes",
    ),
) -> None:
    """
    Push queued local changes to the remote API, then pull remote changes.

    Exits with code 1 when the pass was aborted or left failed entries.

    Examples:
        tillsync sync
        tillsync sync --no-pull
    """

    async def _sync(service: SyncService) -> SyncResult:
        probe = service.orchestrator.probe
        if probe is not None:
            await probe.check()
        return await service.sync(pull=False if no_pull else None)

    try:
        result = run_with_service(_sync)
    except Exception as e:
        raise typer.Exit(handle_error(e))

    if result.aborted:
        print_error(
            f"Sync aborted: {result.abort_reason}",
            reason="The remote API is not reachable; local changes stay queued",
            solution="tillsync sync  # once the connection is back",
        )
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    _print_result(result)

    if result.conflicted:
        console.print(
            f"[yellow]{result.conflicted} conflict(s) need a decision:[/yellow] "
            "tillsync conflicts list"
        )
    if result.failed:
        raise typer.Exit(ExitCode.GENERAL_ERROR)


def retry() -> None:
    """
    Move every failed entry back to pending so the next sync retries it.

    Examples:
        tillsync retry && tillsync sync
    """

    async def _retry(service: SyncService) -> int:
        return service.retry_failed_operations()

    try:
        moved = run_with_service(_retry)
    except Exception as e:
        raise typer.Exit(handle_error(e))

    if moved:
        console.print(f"[green]✓[/green] {moved} failed entr{'y' if moved == 1 else 'ies'} reset to pending")
    else:
        console.print("[dim]No failed entries[/dim]")

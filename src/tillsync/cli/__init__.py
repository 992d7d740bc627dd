"""
tillsync CLI - Main application entry point.
"""

import typer

from tillsync import __version__
from tillsync.cli import conflicts, queue, serve, sync
from tillsync.cli.context import setup_logging

# Help panel names for command grouping
PANEL_SYNC = "Synchronize"
PANEL_QUEUE = "Inspect and Repair"
PANEL_SERVER = "Local API"

app = typer.Typer(
    name="tillsync",
    help="Local-first sync for point-of-sale data",
    no_args_is_help=True,
    add_completion=False,
    context_settings={"help_option_names": ["--help", "-h"]},
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"tillsync {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug output with detailed logging",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit",
    ),
) -> None:
    """
    tillsync - keep a till working offline and reconcile when back online.

    Common Workflows:
        tillsync status                      # What is waiting to be pushed
        tillsync sync                        # Push, then pull
        tillsync queue list --status error   # See what failed
        tillsync retry && tillsync sync      # Retry failed entries
        tillsync conflicts list              # Review divergent edits
        tillsync serve                       # Local API for the UI
    """
    setup_logging(debug)
    ctx.obj = {"debug": debug}


app.command(name="status", rich_help_panel=PANEL_SYNC)(sync.status)
app.command(name="sync", rich_help_panel=PANEL_SYNC)(sync.sync)
app.command(name="retry", rich_help_panel=PANEL_QUEUE)(sync.retry)
app.add_typer(queue.app, name="queue", rich_help_panel=PANEL_QUEUE)
app.add_typer(conflicts.app, name="conflicts", rich_help_panel=PANEL_QUEUE)
app.command(name="serve", rich_help_panel=PANEL_SERVER)(serve.serve)


def cli_main() -> None:
    """Main CLI entry point."""
    app()


__all__ = ["app", "cli_main"]

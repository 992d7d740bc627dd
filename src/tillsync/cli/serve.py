"""
tillsync CLI - serve command.

Runs the local API under uvicorn. The service's automatic triggers
(periodic timer, connectivity edges, reachability probe) run for as long as
the server does.
"""

import typer
import uvicorn
from rich.console import Console

from tillsync.cli import context
from tillsync.cli.errors import handle_error
from tillsync.core.api.app import create_app

console = Console()


def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind"),
    port: int = typer.Option(8765, "--port", "-p", help="Port to listen on"),
) -> None:
    """
    Serve the local sync API.

    Examples:
        tillsync serve
        tillsync serve --port 9000
    """
    try:
        service = context.build_service()
    except Exception as e:
        raise typer.Exit(handle_error(e))

    console.print(f"[cyan]tillsync API[/cyan] on http://{host}:{port}")
    uvicorn.run(create_app(service), host=host, port=port, log_level="info")

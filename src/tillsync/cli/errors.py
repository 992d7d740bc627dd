"""
Standardized error handling and exit codes for the tillsync CLI.

Provides consistent error messaging with actionable guidance and maps the
sync exception hierarchy onto exit codes.
"""

from enum import IntEnum

from pydantic import ValidationError
from rich.console import Console

from tillsync.core.sync.exceptions import (
    ConflictPendingError,
    EntryNotFoundError,
    InvalidTransitionError,
    SyncError,
    TransientNetworkError,
)

console = Console(stderr=True)


class ExitCode(IntEnum):
    """Standard exit codes for tillsync CLI operations."""

    SUCCESS = 0
    """Operation completed successfully."""

    GENERAL_ERROR = 1
    """Generic error, or a sync pass that left failures behind."""

    USER_ERROR = 2
    """Bad input or configuration (actionable by the user)."""


def print_error(
    problem: str,
    *,
    reason: str | None = None,
    solution: str | None = None,
) -> None:
    """
    Print a standardized error message with actionable guidance.

    Args:
        problem: Brief description of what went wrong
        reason: Optional explanation of why it happened
        solution: Optional command or action to fix it

    Example:
        >>> print_error(
        ...     "Queue entry not found: 3f2a",
        ...     solution="tillsync queue list",
        ... )
    """
    console.print(f"[red]Error:[/red] {problem}")

    if reason:
        console.print(f"[dim]{reason}[/dim]")

    if solution:
        console.print(f"[cyan]→ Try:[/cyan] {solution}")


def handle_error(error: Exception) -> ExitCode:
    """
    Print an error and return the exit code it maps to.

    Args:
        error: The exception raised by a command

    Returns:
        USER_ERROR for bad input, GENERAL_ERROR otherwise
    """
    if isinstance(error, EntryNotFoundError):
        print_error(
            str(error),
            reason="The entry may have been synced, discarded or resolved already",
            solution="tillsync queue list",
        )
        return ExitCode.USER_ERROR

    if isinstance(error, ConflictPendingError):
        print_error(
            str(error),
            solution="tillsync conflicts list",
        )
        return ExitCode.USER_ERROR

    if isinstance(error, InvalidTransitionError):
        print_error(str(error))
        return ExitCode.USER_ERROR

    if isinstance(error, TransientNetworkError):
        print_error(
            str(error),
            reason="The remote API could not be reached",
            solution="check TILLSYNC_API_URL and your network, then run: tillsync sync",
        )
        return ExitCode.GENERAL_ERROR

    if isinstance(error, (ValidationError, ValueError)):
        print_error(str(error))
        return ExitCode.USER_ERROR

    if isinstance(error, SyncError):
        print_error(str(error))
        return ExitCode.GENERAL_ERROR

    print_error(f"Unexpected error: {error}", reason="Run with --debug for details")
    return ExitCode.GENERAL_ERROR

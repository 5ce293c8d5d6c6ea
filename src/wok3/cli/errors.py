"""
Standardized error handling and exit codes for the wok3 CLI.
"""

from enum import IntEnum

from rich.console import Console

console = Console(stderr=True)


class ExitCode(IntEnum):
    """Standard exit codes for wok3 CLI operations."""

    SUCCESS = 0
    """Operation completed successfully."""

    GENERAL_ERROR = 1
    """Generic error or failed operation."""

    USER_ERROR = 2
    """User configuration or input error (actionable by user)."""


def print_error(
    problem: str,
    *,
    reason: str | None = None,
    solution: str | None = None,
) -> None:
    """
    Print a standardized error message with actionable guidance.

    Example:
        >>> print_error(
        ...     "No running wok3 server",
        ...     solution="wok3 serve",
        ... )
    """
    console.print(f"[red]Error:[/red] {problem}")

    if reason:
        console.print(f"[dim]{reason}[/dim]")

    if solution:
        console.print(f"[cyan]→ Try:[/cyan] {solution}")


def print_not_in_project_error() -> None:
    """Print error when run outside a git repository."""
    print_error(
        "Not in a project directory",
        reason="Could not find .wok3/ or .git/ in this directory or any parent",
        solution="cd into your repository, then run: wok3 init",
    )


def print_no_server_error() -> None:
    """Print error when no running instance is advertised."""
    print_error(
        "No running wok3 server for this project",
        reason="Worktree commands are forwarded to the server that owns the dev processes",
        solution="wok3 serve",
    )

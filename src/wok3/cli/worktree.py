"""
wok3 CLI - worktree commands.

These forward to the running server, which owns the dev processes.
"""

from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from wok3.cli.client import ApiError, ServerNotRunningError, Wok3Client
from wok3.cli.errors import ExitCode, print_error, print_no_server_error, print_not_in_project_error
from wok3.core.config.loader import find_project_root

console = Console()

STATUS_STYLES = {
    "running": "green",
    "starting": "yellow",
    "creating": "yellow",
    "stopped": "dim",
    "error": "red",
}


def connect() -> Wok3Client:
    """Client for this project's running server, or exit with guidance."""
    project_root = find_project_root()
    if project_root is None:
        print_not_in_project_error()
        raise typer.Exit(ExitCode.USER_ERROR)
    try:
        return Wok3Client.for_project(project_root)
    except ServerNotRunningError:
        print_no_server_error()
        raise typer.Exit(ExitCode.GENERAL_ERROR)


def call_api(action: str, fn: Any, *args: Any) -> Any:
    try:
        return fn(*args)
    except ServerNotRunningError as e:
        print_error(f"Could not {action}", reason=str(e), solution="wok3 serve")
        raise typer.Exit(ExitCode.GENERAL_ERROR)
    except ApiError as e:
        print_error(f"Could not {action}: {e}")
        raise typer.Exit(ExitCode.GENERAL_ERROR)


def _ports_label(wt: dict[str, Any]) -> str:
    ports = wt.get("ports") or []
    return ", ".join(str(p) for p in ports) if ports else "-"


def list_worktrees(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show git details"),
) -> None:
    """
    Show all worktrees with their status and ports.

    Examples:
        wok3 list
        wok3 list --verbose
    """
    with connect() as client:
        worktrees = call_api("list worktrees", client.list_worktrees)

    if not worktrees:
        console.print("[yellow]No worktrees yet[/yellow]")
        console.print("[dim]Create one with: wok3 create <branch>[/dim]")
        return

    table = Table(title="Worktrees")
    table.add_column("Name", style="cyan")
    table.add_column("Branch", style="green")
    table.add_column("Status")
    table.add_column("Ports", style="blue")
    if verbose:
        table.add_column("Git")
        table.add_column("Path", style="dim")

    for wt in worktrees:
        status = wt.get("status", "")
        style = STATUS_STYLES.get(status, "")
        row = [
            wt["id"],
            wt.get("branch", ""),
            f"[{style}]{status}[/{style}]" if style else status,
            _ports_label(wt),
        ]
        if verbose:
            git = wt.get("gitStatus") or {}
            flags = []
            if git.get("hasUncommitted"):
                flags.append("dirty")
            if git.get("ahead"):
                flags.append(f"↑{git['ahead']}")
            if git.get("behind"):
                flags.append(f"↓{git['behind']}")
            if git.get("noUpstream"):
                flags.append("no upstream")
            row.extend([" ".join(flags) or "clean", wt.get("path", "")])
        table.add_row(*row)

    console.print(table)


def create(
    branch: str = typer.Argument(..., help="Branch to check out or create"),
    name: str | None = typer.Option(None, "--name", "-n", help="Worktree name"),
) -> None:
    """
    Create a worktree for BRANCH.

    Existing local or remote branches are checked out; otherwise a new
    branch is created from the configured base branch.

    Examples:
        wok3 create feature/auth-fix
        wok3 create feature/auth-fix --name auth
    """
    with connect() as client:
        with console.status(f"Creating worktree for {branch}..."):
            result = call_api("create worktree", client.create, branch, name)

    wt = result.get("worktree") or {}
    console.print(f"[green]✓[/green] {result.get('message') or 'Created'}")
    if wt.get("path"):
        console.print(f"  [dim]{wt['path']}[/dim]")


def start(worktree_id: str = typer.Argument(..., help="Worktree name")) -> None:
    """
    Start the dev server of a worktree.

    Examples:
        wok3 start auth-fix
    """
    with connect() as client:
        with console.status(f"Starting {worktree_id}..."):
            result = call_api("start worktree", client.start, worktree_id)

    wt = result.get("worktree") or {}
    console.print(f"[green]✓[/green] {result.get('message') or 'Started'}")
    console.print(f"  ports: [blue]{_ports_label(wt)}[/blue]")


def stop(worktree_id: str = typer.Argument(..., help="Worktree name")) -> None:
    """
    Stop the dev server of a worktree.

    Examples:
        wok3 stop auth-fix
    """
    with connect() as client:
        result = call_api("stop worktree", client.stop, worktree_id)
    console.print(f"[green]✓[/green] {result.get('message') or 'Stopped'}")


def remove(
    worktree_id: str = typer.Argument(..., help="Worktree name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
) -> None:
    """
    Stop and delete a worktree.

    Examples:
        wok3 remove auth-fix
        wok3 remove auth-fix --yes
    """
    if not yes and not typer.confirm(f"Remove worktree {worktree_id} and its directory?"):
        raise typer.Exit(ExitCode.SUCCESS)
    with connect() as client:
        result = call_api("remove worktree", client.remove, worktree_id)
    console.print(f"[green]✓[/green] {result.get('message') or 'Removed'}")


def logs(worktree_id: str = typer.Argument(..., help="Worktree name")) -> None:
    """
    Print the most recent dev-server output of a worktree.

    Examples:
        wok3 logs auth-fix
    """
    with connect() as client:
        lines = call_api("fetch logs", client.logs, worktree_id)
    for line in lines:
        console.print(line, markup=False, highlight=False)

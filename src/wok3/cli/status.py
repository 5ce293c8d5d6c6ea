"""
wok3 CLI - ports and activity commands.
"""

from datetime import datetime

import typer
from rich.console import Console
from rich.table import Table

from wok3.cli.worktree import call_api, connect

console = Console()

SEVERITY_STYLES = {
    "info": "cyan",
    "success": "green",
    "warning": "yellow",
    "error": "red",
}


def ports() -> None:
    """
    Show discovered ports and the offsets held by running worktrees.

    Examples:
        wok3 ports
    """
    with connect() as client:
        info = call_api("fetch ports", client.ports)

    discovered = info.get("discovered") or []
    step = info.get("offsetStep", 0)
    if not info.get("virtualizationEnabled"):
        console.print("[yellow]Port virtualization is off[/yellow]")
        if not discovered:
            console.print("[dim]Run port discovery: POST /api/discover[/dim]")
        return

    console.print(f"Discovered: [blue]{', '.join(map(str, discovered))}[/blue] (step {step})")
    allocated = info.get("allocated") or {}
    if not allocated:
        console.print("[dim]No offsets in use[/dim]")
        return

    table = Table(title="Allocated offsets")
    table.add_column("Offset", justify="right")
    table.add_column("Worktree", style="cyan")
    table.add_column("Ports", style="blue")
    for offset, holder in allocated.items():
        shifted = ", ".join(str(p + int(offset)) for p in discovered)
        table.add_row(offset, holder or "-", shifted)
    console.print(table)


def _format_time(value: str) -> str:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone().strftime("%H:%M:%S")
    except ValueError:
        return value


def activity(
    since: str | None = typer.Option(None, "--since", help="Event id or ISO timestamp"),
    category: str | None = typer.Option(
        None, "--category", "-c", help="agent, worktree or system"
    ),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum number of events"),
) -> None:
    """
    Show recent activity.

    Examples:
        wok3 activity
        wok3 activity --category worktree -n 20
    """
    with connect() as client:
        events = call_api("fetch activity", client.activity, since, category, limit)

    if not events:
        console.print("[dim]No activity[/dim]")
        return

    for event in events:
        style = SEVERITY_STYLES.get(event.get("severity", ""), "")
        when = _format_time(event.get("timestamp", ""))
        target = f" [cyan]{event['worktreeId']}[/cyan]" if event.get("worktreeId") else ""
        title = f"[{style}]{event.get('title', '')}[/{style}]" if style else event.get("title", "")
        console.print(f"[dim]{when}[/dim]{target} {title}")
        if event.get("detail"):
            console.print(f"  [dim]{event['detail']}[/dim]", markup=False)

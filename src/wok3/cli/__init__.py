"""
wok3 CLI - Main application entry point.

This module sets up the Typer CLI application with all subcommands.
"""

import logging

import typer
from rich.console import Console

from wok3 import __version__
from wok3.cli import serve, status, worktree

# Help panel names for command grouping
PANEL_SERVER = "Run wok3"
PANEL_WORKTREES = "Manage Worktrees"
PANEL_STATUS = "See What is Running"

app = typer.Typer(
    name="wok3",
    help="Parallel git worktrees, each with its own dev server and ports",
    no_args_is_help=True,
    add_completion=True,
    context_settings={"help_option_names": ["--help", "-h"]},
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"wok3 {__version__}")
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
    wok3 - run many worktrees of one project side by side.

    Each worktree gets its own branch, its own dev-server process and its
    own port offset, so nothing collides.

    Quick Start:
        1. wok3 init                 # Write .wok3/config.json
        2. wok3 serve                # Run the server (keep it open)
        3. wok3 create feature/x     # Create a worktree
        4. wok3 start feature-x      # Start its dev server
    """
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"debug": debug}


app.command(name="init", rich_help_panel=PANEL_SERVER)(serve.init)
app.command(name="serve", rich_help_panel=PANEL_SERVER)(serve.serve)

app.command(name="list", rich_help_panel=PANEL_WORKTREES)(worktree.list_worktrees)
app.command(name="create", rich_help_panel=PANEL_WORKTREES)(worktree.create)
app.command(name="start", rich_help_panel=PANEL_WORKTREES)(worktree.start)
app.command(name="stop", rich_help_panel=PANEL_WORKTREES)(worktree.stop)
app.command(name="remove", rich_help_panel=PANEL_WORKTREES)(worktree.remove)

app.command(name="logs", rich_help_panel=PANEL_STATUS)(worktree.logs)
app.command(name="ports", rich_help_panel=PANEL_STATUS)(status.ports)
app.command(name="activity", rich_help_panel=PANEL_STATUS)(status.activity)


__all__ = ["app"]

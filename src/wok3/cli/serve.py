"""
wok3 CLI - init and serve commands.
"""

import logging
from pathlib import Path

import typer
from rich.console import Console

from wok3.cli.errors import ExitCode, print_error, print_not_in_project_error
from wok3.core.advertisement import read_advertisement
from wok3.core.config.loader import find_project_root, get_config_path, init_config
from wok3.core.errors import Wok3Error

console = Console()
logger = logging.getLogger(__name__)


def _project_root() -> Path:
    project_root = find_project_root()
    if project_root is None:
        print_not_in_project_error()
        raise typer.Exit(ExitCode.USER_ERROR)
    return project_root


def init(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite an existing .wok3/config.json",
    ),
) -> None:
    """
    Create .wok3/config.json with detected defaults.

    Detects the package manager (from lockfiles) and the default branch.

    Examples:
        wok3 init
        wok3 init --force
    """
    project_root = _project_root()
    existed = get_config_path(project_root).exists()
    config = init_config(project_root, overwrite=force)

    if existed and not force:
        console.print(f"[yellow]Config already exists:[/yellow] {get_config_path(project_root)}")
        console.print("[dim]Use --force to regenerate it.[/dim]")
        return

    console.print(f"[green]✓[/green] Wrote {get_config_path(project_root)}")
    console.print(f"  start:   [cyan]{config.start_command}[/cyan]")
    console.print(f"  install: [cyan]{config.install_command}[/cyan]")
    console.print(f"  base:    [cyan]{config.base_branch}[/cyan]")
    console.print("\n[dim]Next: wok3 serve, then POST /api/discover to find your dev ports[/dim]")


def serve(
    ctx: typer.Context,
    port: int | None = typer.Option(
        None,
        "--port",
        "-p",
        help="Port to listen on (defaults to serverPort from the config)",
    ),
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind"),
) -> None:
    """
    Run the wok3 server for this project.

    The server owns every dev-server process; stopping it stops them all.
    Refuses to start when another live instance is already advertised.

    Examples:
        wok3 serve
        wok3 serve --port 7000
    """
    debug = ctx.obj.get("debug", False) if ctx.obj else False
    project_root = _project_root()

    existing = read_advertisement(project_root)
    if existing is not None:
        print_error(
            f"wok3 is already running for this project at {existing.url} (PID {existing.pid})",
            solution="Use the running instance, or stop it first",
        )
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    import uvicorn

    from wok3.api.app import create_app
    from wok3.core.context import Wok3Context

    try:
        context = Wok3Context.open(project_root)
    except Wok3Error as e:
        print_error(str(e), solution="wok3 init")
        raise typer.Exit(ExitCode.USER_ERROR)

    listen_port = port or context.config.server_port
    url = f"http://{host}:{listen_port}"
    console.print(f"[bold cyan]wok3[/bold cyan] serving [green]{context.project_name}[/green]")
    console.print(f"[dim]API: {url}/api/worktrees[/dim]")
    console.print("[dim]Press Ctrl+C to stop[/dim]\n")

    try:
        uvicorn.run(
            create_app(context, advertise_url=url),
            host=host,
            port=listen_port,
            log_level="info" if debug else "warning",
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]wok3 stopped[/yellow]")
        raise typer.Exit(ExitCode.SUCCESS)

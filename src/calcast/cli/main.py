"""calcast CLI — main entry point."""

import logging

import click

from calcast.cli.connections import connections
from calcast.cli.events import events


@click.group()
@click.version_option(package_name="calcast")
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this invocation.")
def cli(log_level: str | None):
    """Broadcast one event to every linked calendar."""
    from calcast.config import get_settings

    level = (log_level or get_settings().log_level).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


cli.add_command(connections)
cli.add_command(events)


@cli.command()
@click.argument("workspace_id")
@click.option("--actor", default="operator", help="Actor id recorded in the token.")
@click.option("--unauthorized", is_flag=True, help="Mint a token for a non-allowed workspace.")
@click.option("--minutes", type=int, default=None, help="Token lifetime in minutes.")
def token(workspace_id: str, actor: str, unauthorized: bool, minutes: int | None):
    """Mint an API bearer token scoped to one workspace."""
    from datetime import timedelta

    from calcast.api.auth import create_access_token

    expires = timedelta(minutes=minutes) if minutes else None
    click.echo(create_access_token(workspace_id, actor, not unauthorized, expires))


@cli.command()
@click.argument("workspace_id")
@click.option("--actor", default="operator", help="User starting the link.")
@click.option(
    "--kind",
    type=click.Choice(["private", "group", "supergroup", "channel"]),
    default="private",
    show_default=True,
)
def link(workspace_id: str, actor: str, kind: str):
    """Print a consent URL that links a calendar account to the workspace."""
    import asyncio

    from rich.console import Console

    from calcast.cli._scope import operator_scope
    from calcast.core.services import get_services

    console = Console()
    url = asyncio.run(get_services().linker.start(operator_scope(workspace_id, actor), kind))
    console.print("\n[bold]Open this URL to link a Google Calendar account:[/bold]\n")
    console.print(url, soft_wrap=True)


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to API_HOST).")
@click.option("--port", type=int, default=None, help="Port (defaults to API_PORT).")
def serve(host: str | None, port: int | None):
    """Run the HTTP API."""
    import uvicorn

    from calcast.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "calcast.api.app:create_app",
        factory=True,
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=settings.log_level.lower(),
    )

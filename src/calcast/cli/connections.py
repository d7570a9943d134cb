"""calcast connections — inspect and revoke linked calendar accounts."""

from __future__ import annotations

import asyncio

import click
from rich.console import Console
from rich.table import Table

from calcast.cli._scope import operator_scope

console = Console()


@click.group()
def connections():
    """Manage calendar accounts linked to a workspace."""


@connections.command("list")
@click.argument("workspace_id")
def list_connections(workspace_id: str):
    """List active connections. Credentials are never printed."""
    from calcast.core.services import get_services

    active = asyncio.run(get_services().credentials.list_active_connections(workspace_id))
    if not active:
        console.print(f"[dim]No calendar accounts linked to {workspace_id}[/dim]")
        return

    table = Table(title=f"Connections for {workspace_id}", show_header=True)
    table.add_column("Account", style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Linked by")
    table.add_column("Access expires")
    for conn in active:
        expires = conn.access_expires_at.isoformat() if conn.access_expires_at else "-"
        table.add_row(
            conn.display_identifier, conn.external_account_id, conn.linked_by or "-", expires
        )
    console.print(table)


@connections.command()
@click.argument("workspace_id")
@click.argument("account")
def revoke(workspace_id: str, account: str):
    """Disconnect ACCOUNT (id or email) and drop its event mappings."""
    from calcast.core.services import get_services

    linker = get_services().linker
    scope = operator_scope(workspace_id)

    async def _revoke() -> tuple[str | None, int]:
        account_id = await linker.resolve_account(scope, account)
        if account_id is None:
            return None, 0
        return account_id, await linker.disconnect(scope, account_id)

    account_id, removed = asyncio.run(_revoke())
    if account_id is None:
        console.print(f"[red]✗ No connection matching {account}[/red]")
        raise SystemExit(1)
    console.print(f"[green]✓ Disconnected {account}[/green] ({removed} event mappings removed)")

"""calcast events — broadcast events from the shell."""

from __future__ import annotations

import asyncio
from datetime import date, datetime

import click
from rich.console import Console
from rich.table import Table

from calcast.cli._scope import operator_scope
from calcast.core.errors import CalcastError

console = Console()


@click.group()
def events():
    """Create, update and delete broadcast events."""


def _print_scoreboard(board) -> None:
    table = Table(title=f"{board.operation.value} {board.bot_event_uid}", show_header=True)
    table.add_column("Account", style="bold")
    table.add_column("Result")
    table.add_column("Detail")
    for ok in board.succeeded:
        table.add_row(ok.display_identifier, "[green]✓ ok[/green]", ok.link or ok.note or "")
    for bad in board.failed:
        table.add_row(bad.display_identifier, f"[red]✗ {bad.reason}[/red]", bad.detail or "")
    console.print(table)
    console.print(f"[bold]{board.summary()}[/bold]")
    if board.reauth_accounts:
        console.print(
            "[yellow]Reconnect required for: " + ", ".join(board.reauth_accounts) + "[/yellow]"
        )


def _payload(
    title: str | None,
    start: str | None,
    end: str | None,
    all_day: bool,
    location: str | None,
    notes: str | None,
    timezone: str | None,
):
    from calcast.models.event import EventPayload

    data: dict = {}
    if title is not None:
        data["title"] = title
    if all_day:
        data["all_day"] = True
        if start:
            data["start_date"] = date.fromisoformat(start)
        if end:
            data["end_date"] = date.fromisoformat(end)
    else:
        if start:
            data["start"] = datetime.fromisoformat(start)
        if end:
            data["end"] = datetime.fromisoformat(end)
    if location is not None:
        data["location"] = location
    if notes is not None:
        data["notes"] = notes
    if timezone is not None:
        data["timezone"] = timezone
    return EventPayload(**data)


def _run(coro) -> None:
    try:
        board = asyncio.run(coro)
    except (CalcastError, ValueError) as exc:
        console.print(f"[bold red]{exc}[/bold red]")
        raise SystemExit(1) from exc
    _print_scoreboard(board)


_event_options = [
    click.option("--title", default=None),
    click.option("--start", default=None, help="ISO datetime, or ISO date with --all-day."),
    click.option("--end", default=None, help="ISO datetime, or ISO date with --all-day."),
    click.option("--all-day", is_flag=True),
    click.option("--location", default=None),
    click.option("--notes", default=None),
    click.option("--timezone", default=None, help="IANA zone, e.g. Europe/Berlin."),
]


def event_options(func):
    for option in reversed(_event_options):
        func = option(func)
    return func


@events.command()
@click.argument("workspace_id")
@event_options
def create(workspace_id: str, **fields):
    """Create an event in every linked account."""
    from calcast.core.services import get_services

    payload = _payload(**fields)
    _run(get_services().orchestrator.broadcast_create(operator_scope(workspace_id), None, payload))


@events.command()
@click.argument("workspace_id")
@click.argument("uid")
@event_options
def update(workspace_id: str, uid: str, **fields):
    """Apply changes to every copy of UID."""
    from calcast.core.identity import normalize_event_uid
    from calcast.core.services import get_services

    payload = _payload(**fields)
    _run(
        get_services().orchestrator.broadcast_update(
            operator_scope(workspace_id), normalize_event_uid(uid), payload
        )
    )


@events.command()
@click.argument("workspace_id")
@click.argument("uid")
def delete(workspace_id: str, uid: str):
    """Delete every copy of UID."""
    from calcast.core.identity import normalize_event_uid
    from calcast.core.services import get_services

    _run(
        get_services().orchestrator.broadcast_delete(
            operator_scope(workspace_id), normalize_event_uid(uid)
        )
    )


@events.command()
@click.argument("workspace_id")
@click.argument("uid")
def mappings(workspace_id: str, uid: str):
    """Show which native event backs UID in each account."""
    from calcast.core.identity import normalize_event_uid
    from calcast.core.services import get_services

    found = asyncio.run(
        get_services().registry.mappings_for(workspace_id, normalize_event_uid(uid))
    )
    if not found:
        console.print(f"[dim]{uid} does not exist in any linked calendar[/dim]")
        return
    table = Table(title=f"Mappings for {uid}", show_header=True)
    table.add_column("Account ID", style="bold")
    table.add_column("Native event ID")
    for m in found:
        table.add_row(m.external_account_id, m.native_event_id)
    console.print(table)

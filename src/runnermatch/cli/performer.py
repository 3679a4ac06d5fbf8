"""Runner management CLI commands."""

from __future__ import annotations

import asyncio
from typing import Annotated, Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from runnermatch.database.queries.performer import (
    create_performer,
    list_performers,
    set_performer_availability,
    update_performer_location,
)

app = typer.Typer(help="Runner management commands")
console = Console()


def _parse_uuid(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        console.print(f"[red]Invalid runner UUID:[/red] {value}")
        raise typer.Exit(code=1)


@app.command()
def create(
    name: Annotated[str, typer.Argument(help="Runner display name")],
    latitude: Annotated[Optional[float], typer.Option("--lat", help="Current latitude")] = None,
    longitude: Annotated[Optional[float], typer.Option("--lon", help="Current longitude")] = None,
    rating: Annotated[
        Optional[float],
        typer.Option("--rating", help="Aggregate rating (0-5)", min=0.0, max=5.0),
    ] = None,
    available: Annotated[
        bool,
        typer.Option("--available/--unavailable", help="Whether the runner takes work"),
    ] = True,
) -> None:
    """Register a runner."""
    from runnermatch.main import get_app_context

    ctx = get_app_context()

    async def _create():
        try:
            async with ctx.session_factory() as session:
                return await create_performer(
                    session,
                    name=name,
                    latitude=latitude,
                    longitude=longitude,
                    rating=rating,
                    is_available=available,
                )
        finally:
            await ctx.engine.dispose()

    try:
        performer = asyncio.run(_create())
    except Exception as e:
        console.print(f"[red]Error creating runner:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Runner created:[/green] {performer.id}")


@app.command("list")
def list_command(
    available_only: Annotated[
        bool, typer.Option("--available", "-a", help="Only available runners")
    ] = False,
) -> None:
    """List runners."""
    from runnermatch.main import get_app_context

    ctx = get_app_context()

    async def _list():
        try:
            async with ctx.session_factory() as session:
                return await list_performers(session, available_only=available_only)
        finally:
            await ctx.engine.dispose()

    try:
        performers = asyncio.run(_list())
    except Exception as e:
        console.print(f"[red]Error listing runners:[/red] {e}")
        raise typer.Exit(code=1)

    if not performers:
        console.print("[yellow]No runners found[/yellow]")
        return

    table = Table(title="Runners")
    table.add_column("ID", style="cyan", no_wrap=True, overflow="fold")
    table.add_column("Name", style="bold")
    table.add_column("Available")
    table.add_column("Rating", justify="right")
    table.add_column("Location", style="dim")

    for p in performers:
        location = f"{p.latitude:.5f}, {p.longitude:.5f}" if p.location else "-"
        table.add_row(
            str(p.id),
            p.name,
            "[green]yes[/green]" if p.is_available else "[dim]no[/dim]",
            f"{p.rating:.2f}" if p.rating is not None else "-",
            location,
        )

    console.print(table)


@app.command()
def locate(
    performer_id: Annotated[str, typer.Argument(help="Runner UUID")],
    latitude: Annotated[float, typer.Option("--lat", help="Latitude")],
    longitude: Annotated[float, typer.Option("--lon", help="Longitude")],
) -> None:
    """Record a runner's current location."""
    from runnermatch.main import get_app_context

    ctx = get_app_context()
    runner_uuid = _parse_uuid(performer_id)

    async def _locate():
        try:
            async with ctx.session_factory() as session:
                return await update_performer_location(
                    session, runner_uuid, latitude, longitude
                )
        finally:
            await ctx.engine.dispose()

    if not asyncio.run(_locate()):
        console.print(f"[red]Runner not found:[/red] {performer_id}")
        raise typer.Exit(code=1)
    console.print(f"[green]Location updated for[/green] {performer_id}")


@app.command()
def availability(
    performer_id: Annotated[str, typer.Argument(help="Runner UUID")],
    available: Annotated[
        bool, typer.Option("--available/--unavailable", help="New availability")
    ] = True,
) -> None:
    """Switch a runner's availability."""
    from runnermatch.main import get_app_context

    ctx = get_app_context()
    runner_uuid = _parse_uuid(performer_id)

    async def _set():
        try:
            async with ctx.session_factory() as session:
                return await set_performer_availability(session, runner_uuid, available)
        finally:
            await ctx.engine.dispose()

    if not asyncio.run(_set()):
        console.print(f"[red]Runner not found:[/red] {performer_id}")
        raise typer.Exit(code=1)
    console.print(
        f"[green]Runner {performer_id} is now "
        f"{'available' if available else 'unavailable'}[/green]"
    )

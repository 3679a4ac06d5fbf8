"""Task management CLI commands.

This module provides CLI commands for creating, listing and completing tasks.
"""

from __future__ import annotations

import asyncio
import json
from typing import Annotated, Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from runnermatch.database.models.task import TaskKind, TaskStatus
from runnermatch.database.queries.task import complete_task, create_task, list_tasks
from runnermatch.matching.affinity import normalize_terms

app = typer.Typer(help="Task management commands")
console = Console()

STATUS_COLORS = {
    "pending": "yellow",
    "assigned": "cyan",
    "unfulfilled": "red",
    "cancelled": "dim",
    "completed": "green",
}


@app.command()
def create(
    kind: Annotated[str, typer.Argument(help="Task kind (errand or commission)")],
    title: Annotated[str, typer.Argument(help="Task title")],
    category: Annotated[
        list[str],
        typer.Option(
            "--category",
            "-C",
            help="Category tag; repeat or pass a comma-separated list",
        ),
    ],
    latitude: Annotated[float, typer.Option("--lat", help="Origin latitude")],
    longitude: Annotated[float, typer.Option("--lon", help="Origin longitude")],
    requester: Annotated[
        Optional[str],
        typer.Option("--requester", "-r", help="Requester identifier"),
    ] = None,
) -> None:
    """Create a new pending task."""
    from runnermatch.main import get_app_context

    ctx = get_app_context()

    try:
        task_kind = TaskKind(kind)
    except ValueError:
        console.print(f"[red]Invalid kind:[/red] {kind}. Valid values: errand, commission")
        raise typer.Exit(code=1)

    categories = normalize_terms(category)
    if not categories:
        console.print("[red]At least one category tag is required[/red]")
        raise typer.Exit(code=1)

    async def _create_task():
        try:
            async with ctx.session_factory() as session:
                return await create_task(
                    session=session,
                    kind=task_kind,
                    title=title,
                    categories=categories,
                    origin_latitude=latitude,
                    origin_longitude=longitude,
                    requester_id=requester,
                )
        finally:
            await ctx.engine.dispose()

    try:
        task = asyncio.run(_create_task())
    except Exception as e:
        console.print(f"[red]Error creating task:[/red] {e}")
        raise typer.Exit(code=1)

    panel = Panel(
        f"[green]Task created successfully![/green]\n\n"
        f"[bold]ID:[/bold] {task.id}\n"
        f"[bold]Kind:[/bold] {task.kind.value}\n"
        f"[bold]Title:[/bold] {task.title}\n"
        f"[bold]Categories:[/bold] {', '.join(task.categories)}\n"
        f"[bold]Origin:[/bold] {task.origin_latitude}, {task.origin_longitude}\n"
        f"[bold]Status:[/bold] {task.status.value}",
        title="Task Created",
        border_style="green",
    )
    console.print(panel)


@app.command("list")
def list_command(
    status: Annotated[
        Optional[str],
        typer.Option(
            "--status",
            "-s",
            help="Filter by status (pending, assigned, unfulfilled, cancelled, completed)",
        ),
    ] = None,
    kind: Annotated[
        Optional[str],
        typer.Option("--kind", "-k", help="Filter by kind (errand or commission)"),
    ] = None,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """List tasks, oldest first."""
    from runnermatch.main import get_app_context

    ctx = get_app_context()

    try:
        status_filter = TaskStatus(status) if status is not None else None
        kind_filter = TaskKind(kind) if kind is not None else None
    except ValueError as e:
        console.print(f"[red]Invalid filter:[/red] {e}")
        raise typer.Exit(code=1)

    async def _list_tasks():
        try:
            async with ctx.session_factory() as session:
                return await list_tasks(
                    session, status_filter=status_filter, kind=kind_filter
                )
        finally:
            await ctx.engine.dispose()

    try:
        tasks = asyncio.run(_list_tasks())
    except Exception as e:
        console.print(f"[red]Error listing tasks:[/red] {e}")
        raise typer.Exit(code=1)

    if format == "json":
        output = [
            {
                "id": str(t.id),
                "kind": t.kind.value,
                "title": t.title,
                "categories": t.categories,
                "status": t.status.value,
                "assigned_performer_id": (
                    str(t.assigned_performer_id) if t.assigned_performer_id else None
                ),
                "created_at": t.created_at.isoformat(),
            }
            for t in tasks
        ]
        console.print(json.dumps(output, indent=2))
        return

    if not tasks:
        console.print("[yellow]No tasks found[/yellow]")
        return

    table = Table(title="Tasks")
    table.add_column("ID", style="cyan", no_wrap=True, overflow="fold")
    table.add_column("Kind", style="blue")
    table.add_column("Title", style="bold")
    table.add_column("Categories", style="dim")
    table.add_column("Status")
    table.add_column("Runner", style="dim", overflow="fold")

    for t in tasks:
        color = STATUS_COLORS.get(t.status.value, "white")
        table.add_row(
            str(t.id),
            t.kind.value,
            t.title,
            ", ".join(t.categories or []),
            f"[{color}]{t.status.value}[/{color}]",
            str(t.assigned_performer_id) if t.assigned_performer_id else "-",
        )

    console.print(table)


@app.command()
def complete(
    task_id: Annotated[str, typer.Argument(help="Task UUID")],
) -> None:
    """Mark an assigned task as completed by its runner."""
    from runnermatch.main import get_app_context

    ctx = get_app_context()

    try:
        task_uuid = UUID(task_id)
    except ValueError:
        console.print(f"[red]Invalid task UUID:[/red] {task_id}")
        raise typer.Exit(code=1)

    async def _complete():
        try:
            async with ctx.session_factory() as session:
                return await complete_task(session, task_uuid)
        finally:
            await ctx.engine.dispose()

    try:
        applied = asyncio.run(_complete())
    except Exception as e:
        console.print(f"[red]Error completing task:[/red] {e}")
        raise typer.Exit(code=1)

    if not applied:
        console.print(f"[yellow]Task {task_id} is not assigned; nothing changed[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"[green]Task {task_id} completed[/green]")

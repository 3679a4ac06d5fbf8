"""Dispatch control CLI commands.

This module provides CLI commands for running the dispatch poll loop,
inspecting a task's candidate ranking, and sweeping orphaned offers.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Annotated, Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from runnermatch.database.models.task import TaskKind
from runnermatch.matching.affinity import explain_affinity
from runnermatch.orchestrator.dispatcher import (
    DispatchOutcome,
    Dispatcher,
    create_dispatcher,
    create_ranker,
)
from runnermatch.orchestrator.events import EventBus
from runnermatch.orchestrator.sweeper import OfferSweeper
from runnermatch.store import SqlDispatchStore

app = typer.Typer(help="Dispatch control commands")
console = Console()

OUTCOME_COLORS = {
    DispatchOutcome.ASSIGNED: "green",
    DispatchOutcome.UNFULFILLED: "red",
    DispatchOutcome.CANCELLED: "dim",
    DispatchOutcome.SUPERSEDED: "yellow",
}


def _parse_kind(kind: str | None) -> TaskKind | None:
    if kind is None:
        return None
    try:
        return TaskKind(kind)
    except ValueError:
        console.print(f"[red]Invalid kind:[/red] {kind}. Valid values: errand, commission")
        raise typer.Exit(code=1)


@app.command()
def run(
    kind: Annotated[
        Optional[str],
        typer.Option("--kind", "-k", help="Only dispatch tasks of this kind"),
    ] = None,
    once: Annotated[
        bool,
        typer.Option("--once", help="Dispatch the current pending tasks and exit"),
    ] = False,
) -> None:
    """Run the dispatcher.

    Without --once, polls for pending tasks until interrupted with Ctrl+C.
    Answers received by a separate web instance are applied to storage
    there; this process notices them when the offer deadline passes.
    """
    from runnermatch.main import get_app_context

    ctx = get_app_context()
    task_kind = _parse_kind(kind)

    console.print()
    console.print(
        Panel(
            f"[bold cyan]Runnermatch Dispatcher[/bold cyan]\n\n"
            f"[bold]Kind:[/bold] {task_kind.value if task_kind else 'all'}\n"
            f"[bold]Offer Timeout:[/bold] {ctx.config.dispatch.offer_timeout_seconds}s\n"
            f"[bold]Search Radius:[/bold] {ctx.config.dispatch.search_radius_meters}m\n"
            f"[bold]Max Concurrent:[/bold] {ctx.config.dispatch.max_concurrent_dispatches}\n"
            f"[bold]Poll Interval:[/bold] {ctx.config.dispatch.poll_interval_seconds}s",
            title="Starting Dispatcher",
            border_style="cyan",
        )
    )
    console.print()

    if once:
        async def run_once():
            try:
                dispatcher = create_dispatcher(
                    ctx.config, SqlDispatchStore(ctx.session_factory), EventBus()
                )
                if dispatcher.sweeper is not None:
                    await dispatcher.sweeper.sweep()
                return await dispatcher.dispatch_pending(task_kind)
            finally:
                await ctx.engine.dispose()

        try:
            results = asyncio.run(run_once())
        except Exception as e:
            console.print(f"[red]Dispatch error:[/red] {e}")
            raise typer.Exit(code=1)

        if not results:
            console.print("[yellow]No pending tasks dispatched[/yellow]")
            return

        table = Table(title="Dispatch Results")
        table.add_column("Task", style="cyan", overflow="fold")
        table.add_column("Outcome")
        table.add_column("Runner", style="dim", overflow="fold")
        table.add_column("Offers", justify="right")
        for result in results:
            color = OUTCOME_COLORS.get(result.outcome, "white")
            table.add_row(
                str(result.task_id),
                f"[{color}]{result.outcome.value}[/{color}]",
                str(result.performer_id) if result.performer_id else "-",
                str(len(result.offered)),
            )
        console.print(table)
        return

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        console.print()
        console.print("[yellow]Shutdown signal received. Stopping dispatcher...[/yellow]")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    async def run_dispatcher():
        dispatcher = create_dispatcher(
            ctx.config, SqlDispatchStore(ctx.session_factory), EventBus()
        )
        try:
            await dispatcher.start(task_kind)

            console.print("[bold green]Dispatcher running[/bold green]")
            console.print("[dim]Press Ctrl+C to stop[/dim]")
            console.print()

            with Live(generate_status_table(dispatcher), refresh_per_second=1) as live:
                while not shutdown_event.is_set():
                    await asyncio.sleep(0.5)
                    live.update(generate_status_table(dispatcher))
        finally:
            await dispatcher.stop()
            await ctx.engine.dispose()
            console.print()
            console.print("[green]Dispatcher stopped[/green]")

    try:
        asyncio.run(run_dispatcher())
    except Exception as e:
        console.print(f"[red]Fatal error:[/red] {e}")
        raise typer.Exit(code=1)


def generate_status_table(dispatcher: Dispatcher) -> Table:
    """Generate a status table for the dispatcher.

    Args:
        dispatcher: Dispatcher instance to get status from

    Returns:
        Rich Table with current dispatcher status
    """
    table = Table(title="Dispatcher Status", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")

    status_text = "[green]Running[/green]" if dispatcher.is_running else "[dim]Stopped[/dim]"
    table.add_row("Status", status_text)
    table.add_row("Active Dispatches", str(dispatcher.active_dispatches))
    table.add_row("Outstanding Offers", str(len(dispatcher.active_offer_ids)))
    table.add_row("Poll Interval", f"{dispatcher.config.poll_interval_seconds}s")

    return table


@app.command()
def rank(
    task_id: Annotated[str, typer.Argument(help="Task UUID")],
    explain: Annotated[
        bool,
        typer.Option("--explain", "-e", help="Show TF-IDF vectors for the top runner"),
    ] = False,
) -> None:
    """Show the current candidate ranking for a task.

    Runners already offered the task are excluded, exactly as the next
    reassignment would see them. Nothing is written.
    """
    from runnermatch.main import get_app_context

    ctx = get_app_context()

    try:
        task_uuid = UUID(task_id)
    except ValueError:
        console.print(f"[red]Invalid task UUID:[/red] {task_id}")
        raise typer.Exit(code=1)

    async def _rank():
        try:
            store = SqlDispatchStore(ctx.session_factory)
            task = await store.get_task(task_uuid)
            if task is None:
                return None, [], None
            offers = await store.list_offers(task.id)
            ranker = create_ranker(ctx.config, store)
            ranked = await ranker.rank(
                task, exclude=frozenset(o.performer_id for o in offers)
            )
            explanation = None
            if explain and ranked:
                history = await ranker.history_builder.build(
                    ranked[0].performer_id, task.kind
                )
                explanation = explain_affinity(task.categories or [], history)
            return task, ranked, explanation
        finally:
            await ctx.engine.dispose()

    try:
        task, ranked, explanation = asyncio.run(_rank())
    except Exception as e:
        console.print(f"[red]Error ranking task:[/red] {e}")
        raise typer.Exit(code=1)

    if task is None:
        console.print(f"[red]Task not found:[/red] {task_id}")
        raise typer.Exit(code=1)

    if not ranked:
        console.print("[yellow]No eligible runners[/yellow]")
        return

    table = Table(title=f"Ranking for {task.title}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Runner", style="cyan", overflow="fold")
    table.add_column("Distance", justify="right")
    table.add_column("Dist", justify="right")
    table.add_column("Rating", justify="right")
    table.add_column("Affinity", justify="right")
    table.add_column("Score", justify="right", style="bold")

    for position, candidate in enumerate(ranked, start=1):
        table.add_row(
            str(position),
            str(candidate.performer_id),
            f"{candidate.distance_m:.0f}m",
            f"{candidate.distance_score:.3f}",
            f"{candidate.rating_score:.3f}",
            f"{candidate.affinity_score:.3f}",
            f"{candidate.final_score:.4f}",
        )
    console.print(table)

    if explanation is not None:
        vectors = Table(title="Affinity Vectors (top runner)")
        vectors.add_column("Term", style="cyan")
        vectors.add_column("Task", justify="right")
        vectors.add_column("History", justify="right")
        terms = sorted(set(explanation.query_vector) | set(explanation.history_vector))
        for term in terms:
            vectors.add_row(
                term,
                f"{explanation.query_vector.get(term, 0.0):.4f}",
                f"{explanation.history_vector.get(term, 0.0):.4f}",
            )
        console.print(vectors)
        console.print(f"[bold]Cosine similarity:[/bold] {explanation.score:.4f}")


@app.command()
def sweep() -> None:
    """Expire pending offers left behind past their deadline."""
    from runnermatch.main import get_app_context

    ctx = get_app_context()

    async def _sweep():
        try:
            sweeper = OfferSweeper(
                SqlDispatchStore(ctx.session_factory),
                grace_seconds=ctx.config.dispatch.sweep_grace_seconds,
            )
            return await sweeper.sweep()
        finally:
            await ctx.engine.dispose()

    try:
        report = asyncio.run(_sweep())
    except Exception as e:
        console.print(f"[red]Sweep error:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(
        f"[green]Sweep complete:[/green] {report.checked} overdue, "
        f"{len(report.expired)} expired"
    )
    for offer_id in report.expired:
        console.print(f"  [dim]expired[/dim] {offer_id}")

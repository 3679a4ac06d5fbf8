"""Main CLI entry point for Runnermatch.

This module provides the main Typer application with sub-commands for task
and runner management and dispatch control.

Usage:
    runnermatch serve --dispatch
    runnermatch task create errand "Pick up lunch" --category food --lat 51.5 --lon -0.12
    runnermatch dispatch run --once
    runnermatch dispatch rank <task-id>
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from runnermatch.cli import dispatch as dispatch_cli
from runnermatch.cli import performer as performer_cli
from runnermatch.cli import task as task_cli
from runnermatch.config import RunnermatchConfig, load_config
from runnermatch.database.connection import get_engine, get_session_factory
from runnermatch.logging import setup_logging

app = typer.Typer(
    name="runnermatch",
    help="Runnermatch: runner matching and dispatch engine",
    no_args_is_help=True,
)

app.add_typer(task_cli.app, name="task", help="Manage tasks")
app.add_typer(performer_cli.app, name="performer", help="Manage runners")
app.add_typer(dispatch_cli.app, name="dispatch", help="Control dispatching")

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded Runnermatch configuration
        engine: Async SQLAlchemy engine
        session_factory: Factory for creating database sessions
    """

    def __init__(self, config: RunnermatchConfig):
        self.config = config
        self.engine = get_engine(config.database)
        self.session_factory = get_session_factory(self.engine)


_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: RunnermatchConfig) -> AppContext:
    """Initialize the global application context."""
    global _app_context
    _app_context = AppContext(config)
    return _app_context


@app.command()
def serve(
    host: Annotated[
        Optional[str],
        typer.Option("--host", "-h", help="Host to bind to (default from config)"),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Port to bind to (default from config)"),
    ] = None,
    dispatch: Annotated[
        bool,
        typer.Option("--dispatch/--no-dispatch", help="Run the dispatch poll loop"),
    ] = True,
) -> None:
    """Start the Runnermatch web server.

    Serves the runner answer, dispatch control and SSE endpoints and, unless
    --no-dispatch is given, polls for pending tasks in the same process.
    """
    import uvicorn

    from runnermatch.web.app import create_app

    ctx = get_app_context()
    bind_host = host or ctx.config.web.host
    bind_port = port or ctx.config.web.port

    console.print("[bold cyan]Starting Runnermatch Web Server[/bold cyan]")
    console.print(f"[dim]Host:[/dim] {bind_host}")
    console.print(f"[dim]Port:[/dim] {bind_port}")
    console.print(f"[dim]Dispatcher:[/dim] {'on' if dispatch else 'off'}")
    console.print()

    app_instance = create_app(ctx.config, run_dispatcher=dispatch)

    uvicorn.run(
        app_instance,
        host=bind_host,
        port=bind_port,
        log_level=ctx.config.logging.level.lower(),
    )


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure global options and initialize application context."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    logging_config = config.logging
    if verbose:
        logging_config = logging_config.model_copy(update={"level": "DEBUG"})
    setup_logging(logging_config)

    try:
        initialize_context(config)
    except Exception as e:
        console.print(f"[red]Error initializing application:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()

"""Apps monitor CLI -- Typer-based operator interface.

Human-readable output goes to *stderr* via Rich.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from apps_monitor import __version__
from apps_monitor.config import Settings, load_settings
from apps_monitor.log_format import configure_logging
from apps_monitor.models.telemetry import QueryState
from apps_monitor.services.seeder import Seeder
from apps_monitor.state.database import create_tables, get_engine, get_session_factory
from apps_monitor.state.locking import DistributedLocking
from apps_monitor.state.repository import QueryCursorRepository, TelemetryRepository

app = typer.Typer(
    name="apps-monitor",
    help="Apps Monitor - tenant telemetry polling and Slack alerting",
    no_args_is_help=True,
)
console = Console(stderr=True)


def _admin_settings() -> Settings:
    # Admin commands only touch the state store.
    try:
        return load_settings(disable_alerter=True, disable_orchestrator=True)
    except Exception as exc:
        console.print(f"[red]Invalid configuration: {escape(str(exc))}[/red]")
        raise typer.Exit(code=3) from exc


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind address (defaults to MONITOR_HOST)."),
    port: int | None = typer.Option(None, "--port", help="Bind port (defaults to MONITOR_PORT)."),
) -> None:
    """Run the monitor and its health endpoints until interrupted."""
    import uvicorn

    from apps_monitor.app import create_app

    try:
        settings = load_settings()
    except Exception as exc:
        console.print(f"[red]Invalid configuration: {escape(str(exc))}[/red]")
        raise typer.Exit(code=3) from exc

    server: uvicorn.Server | None = None

    def _on_failure(_exc: BaseException) -> None:
        if server is not None:
            server.should_exit = True

    fastapi_app = create_app(settings, on_failure=_on_failure)
    bind_host = host or settings.host
    bind_port = port or settings.port
    server = uvicorn.Server(
        uvicorn.Config(
            fastapi_app,
            host=bind_host,
            port=bind_port,
            log_config=None,
            access_log=False,
        )
    )
    console.print(f"[green]✓[/green] Apps monitor {__version__} on http://{bind_host}:{bind_port}")
    server.run()

    failure = getattr(fastapi_app.state, "failure", None)
    if failure is not None:
        console.print(f"[red]Monitor failed: {escape(str(failure))}[/red]")
        raise typer.Exit(code=1)
    console.print("[green]Apps monitor stopped cleanly.[/green]")


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the state store tables."""
    settings = _admin_settings()
    configure_logging(structured=settings.structured_logging, debug=settings.debug)

    async def _run() -> None:
        engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
        try:
            await create_tables(engine)
        finally:
            await engine.dispose()

    asyncio.run(_run())
    console.print("[green]✓[/green] State store schema is up to date")


# ---------------------------------------------------------------------------
# seed
# ---------------------------------------------------------------------------


@app.command()
def seed(
    snapshot: Path = typer.Argument(
        ...,
        help="Path to a SQLite snapshot with an ErrorRecord table.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
) -> None:
    """Seed an empty state store from a historical snapshot."""
    settings = _admin_settings()
    configure_logging(structured=settings.structured_logging, debug=settings.debug)

    async def _run() -> int:
        engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
        try:
            if settings.is_sqlite:
                await create_tables(engine)
            locking = DistributedLocking(
                engine,
                retry_interval=settings.lock_retry_interval_seconds,
                keepalive_interval=settings.lock_keepalive_seconds,
            )
            seeder = Seeder(get_session_factory(engine), locking, seed_path=snapshot)
            return await seeder.run()
        finally:
            await engine.dispose()

    try:
        count = asyncio.run(_run())
    except (ValueError, RuntimeError) as exc:
        console.print(f"[red]Seeding failed: {escape(str(exc))}[/red]")
        raise typer.Exit(code=3) from exc

    if count == 0:
        console.print("[yellow]Nothing seeded (store not empty).[/yellow]")
    else:
        console.print(f"[green]✓[/green] Seeded {count} trace records")


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


def display_query_states(console: Console, states: list[QueryState], total: int, seeded: int) -> None:
    """Render polling cursors and telemetry counts."""
    table = Table(title="Query cursors", show_lines=False)
    table.add_column("Service owner", style="bold")
    table.add_column("Query")
    table.add_column("Queried until")
    table.add_column("Hash", style="dim")
    for state in states:
        table.add_row(state.service_owner, state.name, state.queried_until.isoformat(), state.hash[:12])
    console.print(table)
    console.print(f"Telemetry rows: [bold]{total}[/bold] ([dim]{seeded} seeded[/dim])")


@app.command()
def status() -> None:
    """Show polling cursors and telemetry counts."""
    settings = _admin_settings()

    async def _run() -> tuple[list[QueryState], int, int]:
        engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
        try:
            async with get_session_factory(engine)() as session:
                states = await QueryCursorRepository(session).list_query_states()
                telemetry = TelemetryRepository(session)
                return states, await telemetry.count_telemetry(), await telemetry.count_telemetry(seeded=True)
        finally:
            await engine.dispose()

    try:
        states, total, seeded = asyncio.run(_run())
    except Exception as exc:
        console.print(f"[red]Cannot read state store: {escape(str(exc))}[/red]")
        raise typer.Exit(code=3) from exc

    if not states:
        console.print("[yellow]No queries have been polled yet.[/yellow]")
    display_query_states(console, states, total, seeded)


@app.command()
def version() -> None:
    """Print the version."""
    typer.echo(__version__)

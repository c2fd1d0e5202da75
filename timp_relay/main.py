"""
main.py — timp-relay application entrypoint.

Bootstraps:
  1. Config loading
  2. Schedule store (SQL or in-memory)
  3. FastAPI app (relay WebSockets + REST)
  4. uvicorn

CLI:
  python run.py start              start the relay server
  python run.py init-config        create a default config.yaml
  python run.py stats              print stored schedule totals
  python run.py recent             list the most recent extractions
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from timp_relay import __version__
from timp_relay.api import create_app
from timp_relay.config import Settings, reload_settings
from timp_relay.core import StorageError
from timp_relay.store import create_store

console = Console()
app = typer.Typer(name="timp-relay", help="Schedule extraction relay — extensions → dashboards")


def setup_logging(level: str = "info") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


async def build_and_run(config_path: Optional[Path] = None) -> None:
    settings = reload_settings(config_path)
    setup_logging(settings.api.log_level)
    log = logging.getLogger("timp_relay")

    console.rule(f"[bold blue]timp-relay v{__version__}[/bold blue]")

    # 1. Store
    try:
        store = create_store(settings.store)
    except StorageError as e:
        console.print(f"[red]✗ Schedule store unavailable: {e}[/red]")
        raise typer.Exit(1)

    # 2. App
    fast_app = create_app(settings, store=store)

    # 3. Startup summary
    if settings.store.backend == "memory":
        console.print(f"\n[yellow]⚠ Store[/yellow]     in-memory, last {settings.store.max_extractions} dates kept")
    else:
        console.print(f"\n[green]✓ Store[/green]     {settings.store.url}")
    console.print(f"[green]✓ API[/green]       http://{settings.api.host}:{settings.api.port}")
    console.print(f"[green]✓ WS[/green]        ws://{settings.api.host}:{settings.api.port}/ws/extension  (extensions)")
    console.print(f"[green]✓ WS[/green]        ws://{settings.api.host}:{settings.api.port}/ws/dashboard  (dashboards)")
    if settings.api.static_dir:
        console.print(f"[green]✓ Panel[/green]     http://{settings.api.host}:{settings.api.port}/  ({settings.api.static_dir})")
    console.print(f"[green]✓ Docs[/green]      http://{settings.api.host}:{settings.api.port}/docs\n")

    # 4. uvicorn
    config = uvicorn.Config(
        fast_app,
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.api.log_level,
        loop="asyncio",
    )
    server = uvicorn.Server(config)

    loop = asyncio.get_running_loop()

    def shutdown():
        log.info("Shutdown signal received.")
        server.should_exit = True

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown)
        except NotImplementedError:
            pass  # Windows

    await server.serve()


# ──────────────────────────────────────────────────────────────────────────────
# CLI commands
# ──────────────────────────────────────────────────────────────────────────────

@app.command()
def start(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    host: Optional[str] = typer.Option(None, "--host", help="API bind host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="API port"),
    db_url: Optional[str] = typer.Option(None, "--db-url", help="SQLAlchemy database URL"),
    memory: bool = typer.Option(False, "--memory", help="Keep schedules in memory only"),
    static_dir: Optional[Path] = typer.Option(None, "--static-dir", help="Serve a dashboard directory at /"),
):
    """Start the relay server."""
    if host:
        os.environ["API_HOST"] = host
    if port:
        os.environ["API_PORT"] = str(port)
    if static_dir:
        os.environ["API_STATIC_DIR"] = str(static_dir)
    if db_url:
        os.environ["STORE_URL"] = db_url
    if memory:
        os.environ["STORE_BACKEND"] = "memory"
    asyncio.run(build_and_run(config))


@app.command("init-config")
def init_config(
    output: Path = typer.Option(Path("config.yaml"), "--output", "-o"),
):
    """Generate a default config.yaml."""
    s = Settings.load()
    s.to_yaml(output)
    console.print(f"[green]✓[/green] Config written to [bold]{output}[/bold]")


@app.command("stats")
def stats_cmd(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
):
    """Print totals for every stored schedule."""
    settings = Settings.load(config)
    store = create_store(settings.store)
    try:
        stats = store.aggregate_stats()
    finally:
        store.close()

    table = Table(title="Stored schedules", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Dates", str(stats.total_extractions))
    table.add_row("Classes", str(stats.total_classes))
    table.add_row("Instructors", str(stats.instructors))
    table.add_row("First date", stats.first_date.isoformat() if stats.first_date else "-")
    table.add_row("Last date", stats.last_date.isoformat() if stats.last_date else "-")
    for name, total in stats.totals.items():
        table.add_row(name.replace("_", " ").capitalize(), str(total))
    console.print(table)


@app.command("recent")
def recent_cmd(
    limit: int = typer.Option(10, "--limit", "-n", min=1),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
):
    """List the most recently received extractions."""
    settings = Settings.load(config)
    store = create_store(settings.store)
    try:
        extractions = store.recent_extractions(limit)
    finally:
        store.close()

    if not extractions:
        console.print("[yellow]No schedules stored yet.[/yellow]")
        return

    table = Table(title=f"Last {len(extractions)} extractions", show_header=True)
    table.add_column("Date", style="cyan")
    table.add_column("Classes", justify="right")
    table.add_column("Received", style="green")
    table.add_column("Source")
    table.add_column("URL", style="dim")
    for e in extractions:
        table.add_row(
            e.fecha.isoformat(),
            f"{len(e.clases)}/{e.total_clases}",
            e.received_at.strftime("%Y-%m-%d %H:%M:%S"),
            e.source or "-",
            e.url or "-",
        )
    console.print(table)


if __name__ == "__main__":
    app()

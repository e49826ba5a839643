"""embedpipe CLI — main entry point using Typer."""

import asyncio
import logging
from datetime import date, timedelta
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from embedpipe.config import (
    REQUIRED_FOR_ORCHESTRATOR,
    REQUIRED_FOR_WORKER,
    ConfigError,
    Settings,
    load_settings,
)

app = typer.Typer(
    name="embedpipe",
    help="Claim, enrich and embed chat messages for semantic search.",
    no_args_is_help=True,
)
console = Console()


def _setup_logging(verbose: bool = False, level_name: str = "INFO"):
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_time=False)],
    )


def _load(config: Optional[Path], required: tuple[str, ...] = ()) -> Settings:
    """Load and validate settings, exiting with a readable error on failure."""
    try:
        settings = load_settings(config)
        settings.require(*required)
    except ConfigError as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        raise typer.Exit(code=2)
    return settings


ConfigOption = typer.Option(None, "--config", "-c", help="Path to a TOML config file")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging")


@app.command("init-db")
def init_db(config: Optional[Path] = ConfigOption, verbose: bool = VerboseOption):
    """Create tables, the vector extension and the neighbor-lookup function."""
    settings = _load(config)
    _setup_logging(verbose, settings.general.log_level)

    async def _init():
        from embedpipe.storage.db import Database

        db = Database(settings.general)
        try:
            await db.init_schema()
        finally:
            await db.close()
        console.print("[bold green]Database ready.[/bold green]")

    asyncio.run(_init())


@app.command()
def orchestrate(config: Optional[Path] = ConfigOption, verbose: bool = VerboseOption):
    """Claim pending messages once and dispatch them to the queue."""
    settings = _load(config, REQUIRED_FOR_ORCHESTRATOR)
    _setup_logging(verbose, settings.general.log_level)

    async def _orchestrate():
        from embedpipe.orchestrator import run_orchestrator
        from embedpipe.queue.sqs import SqsDispatcher
        from embedpipe.storage.db import Database

        db = Database(settings.general)
        try:
            with console.status("[bold green]Claiming messages..."):
                summary = await run_orchestrator(db, SqsDispatcher(settings.queue), settings)
        finally:
            await db.close()

        console.print(
            f"  Claimed {summary['claimed']} ({summary['invalid']} without content), "
            f"{summary['workspaces']} workspace(s), {summary['batches']} queue batch(es)"
        )
        if summary["failures"]:
            console.print(f"  [red]Dispatch failures: {summary['failures']}[/red]")
            raise typer.Exit(code=1)

    asyncio.run(_orchestrate())


@app.command()
def daemon(config: Optional[Path] = ConfigOption, verbose: bool = VerboseOption):
    """Run the orchestrator on an interval until stopped."""
    settings = _load(config, REQUIRED_FOR_ORCHESTRATOR)
    _setup_logging(verbose, settings.general.log_level)

    from embedpipe.daemon import run_orchestrator_daemon

    asyncio.run(run_orchestrator_daemon(settings))


@app.command()
def worker(config: Optional[Path] = ConfigOption, verbose: bool = VerboseOption):
    """Consume queued messages and store their embeddings until stopped."""
    settings = _load(config, REQUIRED_FOR_WORKER)
    _setup_logging(verbose, settings.general.log_level)

    from embedpipe.daemon import run_worker_daemon

    asyncio.run(run_worker_daemon(settings))


@app.command()
def pending(config: Optional[Path] = ConfigOption, verbose: bool = VerboseOption):
    """Show how many messages are waiting, in flight, or stuck with stale claims."""
    settings = _load(config)
    _setup_logging(verbose, settings.general.log_level)

    async def _pending():
        from embedpipe.pipeline.claimer import count_pending
        from embedpipe.storage.db import Database

        db = Database(settings.general)
        try:
            async with db.session() as session:
                counts = await count_pending(
                    session, stale_after=timedelta(minutes=settings.claim.stale_after_minutes)
                )
        finally:
            await db.close()

        console.print(f"  Pending:      {counts['pending']}")
        console.print(f"  Claimed:      {counts['claimed']}")
        console.print(f"  Stale claims: {counts['stale']}")

    asyncio.run(_pending())


@app.command()
def usage(
    month: Optional[str] = typer.Option(None, "--month", "-m", help="Month as YYYY-MM (default: current)"),
    config: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Show per-workspace embedding usage for a month."""
    settings = _load(config)
    _setup_logging(verbose, settings.general.log_level)

    from embedpipe.storage.embeddings import month_start

    if month:
        try:
            year, mon = (int(p) for p in month.split("-", 1))
            target = date(year, mon, 1)
        except ValueError:
            console.print(f"[red]Invalid month: {month} (expected YYYY-MM)[/red]")
            raise typer.Exit(code=2)
    else:
        target = month_start()

    async def _usage():
        from embedpipe.storage.db import Database
        from embedpipe.storage.embeddings import get_usage

        db = Database(settings.general)
        try:
            async with db.session() as session:
                rows = await get_usage(session, target)
        finally:
            await db.close()

        if not rows:
            console.print(f"No embedding usage recorded for {target:%Y-%m}.")
            return

        table = Table(title=f"Embedding usage {target:%Y-%m}")
        table.add_column("Workspace")
        table.add_column("Embeddings", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Est. cost (USD)", justify="right")
        for row in rows:
            table.add_row(
                str(row.workspace_id),
                f"{row.total_embeddings_created:,}",
                f"{row.total_tokens_used:,}",
                f"{float(row.estimated_cost_usd):.4f}",
            )
        console.print(table)

    asyncio.run(_usage())


def main():
    """Entry point for the embedpipe CLI."""
    app()


if __name__ == "__main__":
    main()

"""Long-running processes: the scheduled orchestrator and the queue worker."""

import asyncio
import logging
import signal
from datetime import datetime, timezone

from rich.console import Console

from embedpipe.config import Settings
from embedpipe.orchestrator import run_orchestrator
from embedpipe.queue.sqs import SqsConsumer, SqsDispatcher
from embedpipe.storage.db import Database
from embedpipe.worker import EmbeddingWorker, run_worker_loop

logger = logging.getLogger(__name__)
console = Console()

_running = True


def _handle_shutdown(signum, frame):
    global _running
    _running = False
    logger.info("Shutdown signal received, finishing current cycle...")


def _install_signal_handlers() -> None:
    global _running
    _running = True
    signal.signal(signal.SIGINT, _handle_shutdown)
    signal.signal(signal.SIGTERM, _handle_shutdown)


async def run_orchestrator_daemon(settings: Settings) -> None:
    """Run the orchestrator every `worker.orchestrate_interval_seconds`."""
    _install_signal_handlers()
    interval = settings.worker.orchestrate_interval_seconds

    db = Database(settings.general)
    dispatcher = SqsDispatcher(settings.queue)

    console.print(f"[bold]Embedding orchestrator started[/bold] (interval: {interval}s)")
    console.print("Press Ctrl+C to stop.\n")

    cycle = 0
    try:
        while _running:
            cycle += 1
            start = datetime.now(timezone.utc)
            logger.info("Orchestrator cycle %d starting at %s", cycle, start.isoformat())

            try:
                await run_orchestrator(db, dispatcher, settings)
                elapsed = (datetime.now(timezone.utc) - start).total_seconds()
                logger.info("Cycle %d complete in %.1fs", cycle, elapsed)
            except Exception as e:
                logger.error("Orchestrator cycle %d failed: %s", cycle, e, exc_info=True)

            if _running:
                try:
                    await asyncio.sleep(interval)
                except asyncio.CancelledError:
                    break
    finally:
        await db.close()
        console.print("\n[bold]Embedding orchestrator stopped.[/bold]")


async def run_worker_daemon(settings: Settings) -> dict:
    """Consume queue deliveries until a shutdown signal arrives."""
    _install_signal_handlers()

    db = Database(settings.general)
    worker = EmbeddingWorker.from_settings(db, settings)
    consumer = SqsConsumer(settings.queue)

    console.print(
        f"[bold]Embedding worker started[/bold] "
        f"(model: {settings.embedding.model}, concurrency: {settings.worker.max_concurrency})"
    )
    try:
        summary = await run_worker_loop(worker, consumer, should_continue=lambda: _running)
    finally:
        await db.close()
    console.print(
        f"\n[bold]Embedding worker stopped.[/bold] "
        f"{summary['embedded']} embedded, {summary['failed']} failed, {summary['errors']} batch errors"
    )
    return summary

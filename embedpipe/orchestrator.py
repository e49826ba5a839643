"""Embedding orchestrator. Claims pending messages and dispatches them to the queue."""

import logging
from datetime import timedelta

from embedpipe.config import Settings
from embedpipe.pipeline.batcher import group_by_workspace, partition_embeddable
from embedpipe.pipeline.claimer import claim_batch, release_messages
from embedpipe.pipeline.types import QueueEntry
from embedpipe.storage.db import Database

logger = logging.getLogger(__name__)


async def claim_for_run(db: Database, settings: Settings) -> list[QueueEntry]:
    """Claim batches until the per-run cap is hit or the pending pool runs dry."""
    stale_after = timedelta(minutes=settings.claim.stale_after_minutes)
    max_total = settings.claim.max_messages_per_run
    claimed: list[QueueEntry] = []

    while len(claimed) < max_total:
        limit = min(settings.claim.batch_size, max_total - len(claimed))
        async with db.session() as session:
            batch = await claim_batch(session, limit=limit, stale_after=stale_after)
        claimed.extend(batch)
        if len(batch) < limit:
            break

    return claimed


async def run_orchestrator(db: Database, dispatcher, settings: Settings) -> dict:
    """One orchestrator invocation. Safe to run concurrently with itself.

    Returns a summary dict with counts. Claim-stage errors propagate; dispatch
    failures are counted in `failures` and heal once the claims go stale.
    """
    summary = {
        "claimed": 0,
        "valid": 0,
        "invalid": 0,
        "workspaces": 0,
        "batches": 0,
        "failures": 0,
    }

    messages = await claim_for_run(db, settings)
    summary["claimed"] = len(messages)
    if not messages:
        logger.info("No messages need embedding")
        return summary

    valid, invalid_ids = partition_embeddable(messages, settings.claim.max_content_chars)
    summary["valid"] = len(valid)
    summary["invalid"] = len(invalid_ids)

    if invalid_ids:
        async with db.session() as session:
            released = await release_messages(session, invalid_ids)
        logger.info("Marked %d messages without embeddable content as done", released)

    batches = group_by_workspace(valid)
    summary["workspaces"] = len(batches)
    if not batches:
        return summary

    result = await dispatcher.send(batches)
    summary["batches"] = result.batch_count
    summary["failures"] = result.failures

    logger.info(
        "Orchestration complete: claimed=%d valid=%d invalid=%d workspaces=%d batches=%d failures=%d",
        summary["claimed"],
        summary["valid"],
        summary["invalid"],
        summary["workspaces"],
        summary["batches"],
        summary["failures"],
    )
    return summary

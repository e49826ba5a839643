"""Batch worker: turns one queue delivery into stored embeddings.

Stages per delivery:
    1. rebuild thread context (parents + all replies) and summarize threads
    2. one batched embedding call for every message in the delivery
    3. per message: semantic neighbors + idempotent upsert
    4. mark the messages that succeeded, then record workspace usage

An embedding-call failure fails the whole delivery. Per-message failures are
isolated: the rest of the batch completes and only failed records are left
on the queue for redelivery.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Optional
from uuid import UUID

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from embedpipe.config import Settings
from embedpipe.llm.embeddings import Embedder, build_inputs, context_for
from embedpipe.llm.summarizer import ThreadSummarizer
from embedpipe.pipeline.neighbors import NeighborResolver
from embedpipe.pipeline.threads import ThreadContextBuilder
from embedpipe.pipeline.types import BatchReport, MessageOutcome, QueueEntry
from embedpipe.storage.db import Database
from embedpipe.storage.embeddings import (
    build_embedding_record,
    estimate_cost,
    increment_usage,
    mark_processed,
    month_start,
    upsert_embedding,
)

logger = logging.getLogger(__name__)


def _unique_by_message(entries: list[QueueEntry]) -> list[QueueEntry]:
    """Drop repeat deliveries of the same message, keeping the first."""
    seen: set[UUID] = set()
    unique = []
    for entry in entries:
        if entry.message_id not in seen:
            seen.add(entry.message_id)
            unique.append(entry)
    return unique


class EmbeddingWorker:
    def __init__(
        self,
        db: Database,
        settings: Settings,
        embedder: Embedder,
        thread_builder: ThreadContextBuilder,
        resolver: NeighborResolver,
    ):
        self._db = db
        self._settings = settings
        self._embedder = embedder
        self._thread_builder = thread_builder
        self._resolver = resolver
        self._semaphore = asyncio.Semaphore(settings.worker.max_concurrency)

    @classmethod
    def from_settings(cls, db: Database, settings: Settings) -> "EmbeddingWorker":
        return cls(
            db=db,
            settings=settings,
            embedder=Embedder(settings.openai, settings.embedding),
            thread_builder=ThreadContextBuilder(db, ThreadSummarizer(settings.anthropic)),
            resolver=NeighborResolver(settings.context),
        )

    async def process_batch(self, entries: list[QueueEntry]) -> BatchReport:
        """Embed and persist a batch.

        Raises EmbeddingRequestError if the embedding call fails; nothing is
        marked in that case.
        """
        report = BatchReport(received=len(entries))
        entries = _unique_by_message(entries)
        if not entries:
            return report

        context_map = await self._thread_builder.build(entries)
        report.threads = len(context_map)

        inputs = build_inputs(entries, context_map, self._settings.embedding.max_tokens)
        vectors = await self._embedder.embed(inputs)

        outcomes = await asyncio.gather(
            *[
                self._process_one(entry, vector, context_map)
                for entry, vector in zip(entries, vectors)
            ]
        )

        succeeded = [o for o in outcomes if o.ok]
        for outcome in outcomes:
            if not outcome.ok:
                report.failed[str(outcome.message_id)] = outcome.error
        report.succeeded = [o.message_id for o in succeeded]
        report.tokens = sum(o.token_count for o in succeeded)

        if succeeded:
            async with self._db.session() as session:
                await mark_processed(session, report.succeeded)
            report.usage_errors = await self._record_usage(succeeded)

        if report.failed:
            logger.error(
                "%d of %d messages failed: %s",
                len(report.failed),
                len(entries),
                "; ".join(f"{mid}: {err}" for mid, err in report.failed.items()),
            )
        logger.info(
            "Batch done: %d embedded, %d failed, %d threads, %d tokens",
            len(report.succeeded),
            len(report.failed),
            report.threads,
            report.tokens,
        )
        return report

    async def _process_one(self, entry: QueueEntry, vector: list[float], context_map: dict) -> MessageOutcome:
        """Neighbors + upsert for one message; failures become an outcome, not an exception."""
        async with self._semaphore:
            try:
                thread_context = context_for(entry, context_map)
                async with self._db.session() as session:
                    neighbors = await self._resolver.find(session, vector, entry)
                    record = build_embedding_record(
                        entry,
                        vector,
                        neighbors,
                        thread_context,
                        model=self._embedder.model,
                        version=self._settings.embedding.version,
                    )
                    await upsert_embedding(session, record)
                    await session.commit()
                return MessageOutcome(
                    message_id=entry.message_id,
                    workspace_id=entry.workspace_id,
                    token_count=record["token_count"],
                )
            except Exception as e:
                return MessageOutcome(
                    message_id=entry.message_id,
                    workspace_id=entry.workspace_id,
                    error=f"{type(e).__name__}: {e}",
                )

    async def _record_usage(self, succeeded: list[MessageOutcome]) -> int:
        """Best-effort usage increments, one per workspace. Returns error count."""
        per_workspace: dict[UUID, list[int]] = defaultdict(lambda: [0, 0])
        for outcome in succeeded:
            per_workspace[outcome.workspace_id][0] += 1
            per_workspace[outcome.workspace_id][1] += outcome.token_count

        month = month_start()
        errors = 0
        for workspace_id, (count, tokens) in per_workspace.items():
            try:
                async with self._db.session() as session:
                    await increment_usage(
                        session,
                        workspace_id=workspace_id,
                        month=month,
                        embeddings=count,
                        tokens=tokens,
                        cost=estimate_cost(tokens, self._settings.embedding.cost_per_million_tokens),
                    )
            except Exception as e:
                errors += 1
                logger.error("Usage update failed for workspace %s: %s", workspace_id, e)
        return errors

    async def handle_records(self, records: list[dict]) -> BatchReport:
        """Process a queue delivery (records with `messageId` and `body`).

        Malformed bodies are reported as failures by record id. The report's
        `batch_item_failures` lists the record ids the queue should redeliver,
        including every duplicate record of a failed message.
        """
        entries: list[QueueEntry] = []
        record_ids: dict[UUID, list[str]] = defaultdict(list)
        bad_records: dict[str, str] = {}

        for record in records:
            record_id = record.get("messageId", "")
            try:
                entry = QueueEntry.model_validate_json(record["body"])
            except (KeyError, ValidationError) as e:
                logger.error("Malformed queue record %s: %s", record_id, e)
                bad_records[record_id] = f"malformed body: {e}"
                continue
            entries.append(entry)
            record_ids[entry.message_id].append(record_id)

        duplicates = len(entries) - len(record_ids)
        if duplicates:
            logger.info("Delivery carried %d duplicate records, embedding each message once", duplicates)

        report = await self.process_batch(entries)
        report.received = len(records)
        failed_messages = list(report.failed)
        report.failed.update(bad_records)
        report.batch_item_failures = list(bad_records)
        for mid in failed_messages:
            report.batch_item_failures.extend(record_ids[UUID(mid)])
        return report


async def run_worker_loop(
    worker: EmbeddingWorker,
    consumer,
    should_continue=lambda: True,
    idle_sleep: float = 1.0,
    max_batches: Optional[int] = None,
) -> dict:
    """Receive deliveries and process them until stopped.

    Records are deleted only when their message succeeded; failed records
    reappear after the visibility timeout. Queue errors are logged and the
    loop keeps polling.
    """
    summary = {"batches": 0, "embedded": 0, "failed": 0, "errors": 0, "delete_failures": 0}

    while should_continue():
        if max_batches is not None and summary["batches"] >= max_batches:
            break

        try:
            records = await consumer.receive()
        except (BotoCoreError, ClientError) as e:
            summary["errors"] += 1
            logger.error("Queue receive failed: %s", e)
            await asyncio.sleep(idle_sleep)
            continue
        if not records:
            await asyncio.sleep(idle_sleep)
            continue

        summary["batches"] += 1
        try:
            report = await worker.handle_records(records)
        except Exception as e:
            # Whole delivery failed (e.g. embedding call); leave it for redelivery
            summary["errors"] += 1
            logger.error("Batch of %d records failed: %s", len(records), e, exc_info=True)
            continue

        retry_ids = set(report.batch_item_failures)
        done = [r for r in records if r.get("messageId") not in retry_ids]
        delete_failures = await consumer.delete(done)
        if delete_failures:
            summary["delete_failures"] += delete_failures
            logger.warning("%d completed records could not be deleted and will be redelivered", delete_failures)
        summary["embedded"] += len(report.succeeded)
        summary["failed"] += report.failure_count

    return summary

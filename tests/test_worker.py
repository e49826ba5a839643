"""Tests for the batch worker and the queue worker loop."""

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from embedpipe.llm.embeddings import EmbeddingRequestError
from embedpipe.pipeline.types import BatchReport, Neighbor, ThreadContext
from embedpipe.worker import EmbeddingWorker, run_worker_loop
from tests.conftest import FakeDatabase, make_entry


def _worker(settings, context_map=None, vectors=None, neighbors=None, embed_error=None):
    embedder = MagicMock()
    embedder.model = "text-embedding-3-small"
    embedder.embed = AsyncMock(return_value=vectors, side_effect=embed_error)

    thread_builder = MagicMock()
    thread_builder.build = AsyncMock(return_value=context_map or {})

    resolver = MagicMock()
    resolver.find = AsyncMock(return_value=neighbors or [])

    worker = EmbeddingWorker(FakeDatabase(), settings, embedder, thread_builder, resolver)
    return worker, embedder, resolver


def _record(entry, record_id=None):
    return {"messageId": record_id or f"sqs-{entry.message_id}", "receiptHandle": "rh", "body": entry.to_json()}


class TestProcessBatch:
    @pytest.mark.asyncio
    async def test_empty_batch(self, settings):
        worker, embedder, _ = _worker(settings)
        report = await worker.process_batch([])
        assert report.received == 0
        embedder.embed.assert_not_called()

    @pytest.mark.asyncio
    async def test_happy_path(self, settings):
        entries = [make_entry(body="Yes"), make_entry(body="a" * 40)]
        worker, embedder, _ = _worker(settings, vectors=[[0.1], [0.2]])

        with patch("embedpipe.worker.upsert_embedding", AsyncMock()) as upsert, \
             patch("embedpipe.worker.mark_processed", AsyncMock(return_value=2)) as mark, \
             patch("embedpipe.worker.increment_usage", AsyncMock()) as usage:
            report = await worker.process_batch(entries)

        embedder.embed.assert_awaited_once_with(["Yes", "a" * 40])
        assert report.succeeded == [e.message_id for e in entries]
        assert report.failed == {}
        assert report.tokens == 11
        assert upsert.await_count == 2
        assert mark.call_args[0][1] == [e.message_id for e in entries]
        # One usage update per workspace
        assert usage.await_count == 2

    @pytest.mark.asyncio
    async def test_vector_matches_its_message(self, settings):
        entries = [make_entry(body="one"), make_entry(body="two")]
        worker, _, _ = _worker(settings, vectors=[[1.0], [2.0]])

        with patch("embedpipe.worker.upsert_embedding", AsyncMock()) as upsert, \
             patch("embedpipe.worker.mark_processed", AsyncMock()), \
             patch("embedpipe.worker.increment_usage", AsyncMock()):
            await worker.process_batch(entries)

        stored = {c[0][1]["message_id"]: c[0][1]["embedding"] for c in upsert.call_args_list}
        assert stored == {entries[0].message_id: [1.0], entries[1].message_id: [2.0]}

    @pytest.mark.asyncio
    async def test_thread_summary_enriches_input(self, settings):
        parent_id = uuid.uuid4()
        entry = make_entry(body="ok", parent_message_id=parent_id)
        ctx = ThreadContext(parent_message=None, all_thread_messages=[], thread_summary="launch plan")
        worker, embedder, _ = _worker(settings, context_map={parent_id: ctx}, vectors=[[0.5]])

        with patch("embedpipe.worker.upsert_embedding", AsyncMock()) as upsert, \
             patch("embedpipe.worker.mark_processed", AsyncMock()), \
             patch("embedpipe.worker.increment_usage", AsyncMock()):
            await worker.process_batch([entry])

        assert embedder.embed.call_args[0][0] == ["[Thread context: launch plan] ok"]
        record = upsert.call_args[0][1]
        assert record["thread_summary"] == "launch plan"
        assert record["token_count"] == 1

    @pytest.mark.asyncio
    async def test_embedding_failure_fails_whole_batch(self, settings):
        entries = [make_entry(), make_entry()]
        worker, _, _ = _worker(settings, embed_error=EmbeddingRequestError("rate limited"))

        with patch("embedpipe.worker.upsert_embedding", AsyncMock()) as upsert, \
             patch("embedpipe.worker.mark_processed", AsyncMock()) as mark:
            with pytest.raises(EmbeddingRequestError):
                await worker.process_batch(entries)

        upsert.assert_not_called()
        mark.assert_not_called()

    @pytest.mark.asyncio
    async def test_one_failed_write_does_not_sink_batch(self, settings):
        entries = [make_entry(body=f"m{i}") for i in range(3)]
        worker, _, _ = _worker(settings, vectors=[[0.0], [1.0], [2.0]])

        async def upsert(session, record):
            if record["message_id"] == entries[1].message_id:
                raise RuntimeError("constraint violation")

        with patch("embedpipe.worker.upsert_embedding", side_effect=upsert), \
             patch("embedpipe.worker.mark_processed", AsyncMock()) as mark, \
             patch("embedpipe.worker.increment_usage", AsyncMock()):
            report = await worker.process_batch(entries)

        assert report.succeeded == [entries[0].message_id, entries[2].message_id]
        assert list(report.failed) == [str(entries[1].message_id)]
        assert "constraint violation" in report.failed[str(entries[1].message_id)]
        assert mark.call_args[0][1] == [entries[0].message_id, entries[2].message_id]

    @pytest.mark.asyncio
    async def test_neighbor_failure_isolated(self, settings):
        entries = [make_entry(), make_entry()]
        worker, _, resolver = _worker(settings, vectors=[[0.0], [1.0]])
        resolver.find = AsyncMock(side_effect=[TimeoutError(), []])

        with patch("embedpipe.worker.upsert_embedding", AsyncMock()), \
             patch("embedpipe.worker.mark_processed", AsyncMock()), \
             patch("embedpipe.worker.increment_usage", AsyncMock()):
            report = await worker.process_batch(entries)

        assert len(report.succeeded) == 1
        assert report.failure_count == 1

    @pytest.mark.asyncio
    async def test_neighbors_stored(self, settings):
        neighbor = Neighbor(message_id=uuid.uuid4(), similarity=0.88, context_type="channel")
        worker, _, _ = _worker(settings, vectors=[[0.0]], neighbors=[neighbor])

        with patch("embedpipe.worker.upsert_embedding", AsyncMock()) as upsert, \
             patch("embedpipe.worker.mark_processed", AsyncMock()), \
             patch("embedpipe.worker.increment_usage", AsyncMock()):
            await worker.process_batch([make_entry()])

        record = upsert.call_args[0][1]
        assert record["context_message_ids"] == [neighbor.message_id]
        assert record["context_scores"] == [0.88]

    @pytest.mark.asyncio
    async def test_usage_failure_is_best_effort(self, settings):
        ws = uuid.uuid4()
        entries = [make_entry(workspace_id=ws), make_entry(workspace_id=ws)]
        worker, _, _ = _worker(settings, vectors=[[0.0], [1.0]])

        with patch("embedpipe.worker.upsert_embedding", AsyncMock()), \
             patch("embedpipe.worker.mark_processed", AsyncMock()), \
             patch("embedpipe.worker.increment_usage", AsyncMock(side_effect=RuntimeError("locked"))) as usage:
            report = await worker.process_batch(entries)

        assert len(report.succeeded) == 2
        assert report.usage_errors == 1
        assert usage.await_count == 1
        assert usage.call_args.kwargs["embeddings"] == 2

    @pytest.mark.asyncio
    async def test_nothing_marked_when_all_fail(self, settings):
        worker, _, _ = _worker(settings, vectors=[[0.0]])

        with patch("embedpipe.worker.upsert_embedding", AsyncMock(side_effect=RuntimeError("down"))), \
             patch("embedpipe.worker.mark_processed", AsyncMock()) as mark, \
             patch("embedpipe.worker.increment_usage", AsyncMock()) as usage:
            report = await worker.process_batch([make_entry()])

        assert report.succeeded == []
        mark.assert_not_called()
        usage.assert_not_called()


class TestHandleRecords:
    @pytest.mark.asyncio
    async def test_malformed_body_reported_by_record_id(self, settings):
        good = make_entry()
        records = [_record(good, "r-good"), {"messageId": "r-bad", "receiptHandle": "rh", "body": "{not json"}]
        worker, embedder, _ = _worker(settings, vectors=[[0.0]])

        with patch("embedpipe.worker.upsert_embedding", AsyncMock()), \
             patch("embedpipe.worker.mark_processed", AsyncMock()), \
             patch("embedpipe.worker.increment_usage", AsyncMock()):
            report = await worker.handle_records(records)

        assert report.received == 2
        assert report.succeeded == [good.message_id]
        assert "r-bad" in report.failed
        assert report.batch_item_failures == ["r-bad"]
        assert len(embedder.embed.call_args[0][0]) == 1

    @pytest.mark.asyncio
    async def test_failed_message_maps_to_record_id(self, settings):
        a, b = make_entry(), make_entry()
        worker, _, _ = _worker(settings, vectors=[[0.0], [1.0]])

        async def upsert(session, record):
            if record["message_id"] == b.message_id:
                raise RuntimeError("boom")

        with patch("embedpipe.worker.upsert_embedding", side_effect=upsert), \
             patch("embedpipe.worker.mark_processed", AsyncMock()), \
             patch("embedpipe.worker.increment_usage", AsyncMock()):
            report = await worker.handle_records([_record(a, "r-a"), _record(b, "r-b")])

        assert report.batch_item_failures == ["r-b"]

    @pytest.mark.asyncio
    async def test_missing_body(self, settings):
        worker, embedder, _ = _worker(settings)
        report = await worker.handle_records([{"messageId": "r-1"}])
        assert report.batch_item_failures == ["r-1"]
        embedder.embed.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_records_embedded_once(self, settings):
        entry = make_entry(workspace_id=uuid.uuid4(), body="a" * 40)
        worker, embedder, _ = _worker(settings, vectors=[[0.0]])

        with patch("embedpipe.worker.upsert_embedding", AsyncMock()) as upsert, \
             patch("embedpipe.worker.mark_processed", AsyncMock()) as mark, \
             patch("embedpipe.worker.increment_usage", AsyncMock()) as usage:
            report = await worker.handle_records([_record(entry, "r-1"), _record(entry, "r-2")])

        assert embedder.embed.call_args[0][0] == ["a" * 40]
        assert upsert.await_count == 1
        assert report.succeeded == [entry.message_id]
        assert mark.call_args[0][1] == [entry.message_id]
        assert usage.call_args.kwargs["embeddings"] == 1
        assert usage.call_args.kwargs["tokens"] == 10
        assert report.batch_item_failures == []

    @pytest.mark.asyncio
    async def test_failed_duplicate_redelivers_every_record(self, settings):
        entry = make_entry()
        other = make_entry()
        worker, _, _ = _worker(settings, vectors=[[0.0], [1.0]])

        async def upsert(session, record):
            if record["message_id"] == entry.message_id:
                raise RuntimeError("boom")

        with patch("embedpipe.worker.upsert_embedding", side_effect=upsert), \
             patch("embedpipe.worker.mark_processed", AsyncMock()), \
             patch("embedpipe.worker.increment_usage", AsyncMock()):
            report = await worker.handle_records(
                [_record(entry, "r-1"), _record(other, "r-other"), _record(entry, "r-2")]
            )

        assert sorted(report.batch_item_failures) == ["r-1", "r-2"]
        assert report.failure_count == 1


class TestRunWorkerLoop:
    @pytest.mark.asyncio
    async def test_deletes_only_completed_records(self):
        records = [{"messageId": "r-1"}, {"messageId": "r-2"}, {"messageId": "r-3"}]
        consumer = MagicMock()
        consumer.receive = AsyncMock(return_value=records)
        consumer.delete = AsyncMock(return_value=0)
        worker = MagicMock()
        report = BatchReport(received=3, succeeded=[uuid.uuid4(), uuid.uuid4()], failed={"x": "boom"})
        report.batch_item_failures = ["r-2"]
        worker.handle_records = AsyncMock(return_value=report)

        summary = await run_worker_loop(worker, consumer, max_batches=1)

        consumer.delete.assert_awaited_once_with([{"messageId": "r-1"}, {"messageId": "r-3"}])
        assert summary == {"batches": 1, "embedded": 2, "failed": 1, "errors": 0, "delete_failures": 0}

    @pytest.mark.asyncio
    async def test_batch_error_deletes_nothing(self):
        consumer = MagicMock()
        consumer.receive = AsyncMock(return_value=[{"messageId": "r-1"}])
        consumer.delete = AsyncMock()
        worker = MagicMock()
        worker.handle_records = AsyncMock(side_effect=EmbeddingRequestError("down"))

        summary = await run_worker_loop(worker, consumer, max_batches=2)

        consumer.delete.assert_not_called()
        assert summary["errors"] == 2

    @pytest.mark.asyncio
    async def test_idle_when_queue_empty(self):
        consumer = MagicMock()
        consumer.receive = AsyncMock(return_value=[])
        worker = MagicMock()
        polls = iter([True, True, False])

        summary = await run_worker_loop(worker, consumer, should_continue=lambda: next(polls), idle_sleep=0)

        assert consumer.receive.await_count == 2
        assert summary["batches"] == 0

    @pytest.mark.asyncio
    async def test_receive_error_keeps_polling(self):
        consumer = MagicMock()
        consumer.receive = AsyncMock(
            side_effect=[
                ClientError({"Error": {"Code": "ServiceUnavailable", "Message": "try later"}}, "ReceiveMessage"),
                [],
            ]
        )
        worker = MagicMock()
        polls = iter([True, True, False])

        summary = await run_worker_loop(worker, consumer, should_continue=lambda: next(polls), idle_sleep=0)

        assert consumer.receive.await_count == 2
        assert summary["errors"] == 1
        assert summary["batches"] == 0

    @pytest.mark.asyncio
    async def test_delete_failures_reported(self):
        consumer = MagicMock()
        consumer.receive = AsyncMock(return_value=[{"messageId": "r-1"}, {"messageId": "r-2"}])
        consumer.delete = AsyncMock(return_value=1)
        worker = MagicMock()
        worker.handle_records = AsyncMock(return_value=BatchReport(received=2, succeeded=[uuid.uuid4(), uuid.uuid4()]))

        summary = await run_worker_loop(worker, consumer, max_batches=1)

        assert summary["delete_failures"] == 1
        assert summary["embedded"] == 2

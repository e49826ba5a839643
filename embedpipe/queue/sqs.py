"""Amazon SQS transport for embedding work.

The orchestrator sends one queue entry per message in wire batches; the
worker loop receives deliveries and deletes only the records it completed.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from embedpipe.config import QueueSettings
from embedpipe.pipeline.types import QueueEntry, WorkspaceBatch

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    batch_count: int = 0
    failures: int = 0


def _get_sqs_client(settings: QueueSettings):
    return boto3.client("sqs", region_name=settings.region)


def to_wire_entry(entry: QueueEntry) -> dict:
    """Build a SendMessageBatch entry with the JSON snapshot and routing attributes."""
    return {
        "Id": str(entry.message_id),
        "MessageBody": entry.to_json(),
        "MessageAttributes": {
            "workspaceId": {"DataType": "String", "StringValue": str(entry.workspace_id)},
            "messageType": {"DataType": "String", "StringValue": entry.message_type},
            "isThreadMessage": {
                "DataType": "String",
                "StringValue": "true" if entry.is_thread_message else "false",
            },
        },
    }


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class SqsDispatcher:
    """Sends queue entries to SQS in fixed-size wire batches."""

    def __init__(self, settings: QueueSettings, client=None):
        self._queue_url = settings.queue_url
        self._wire_batch_size = settings.wire_batch_size
        self._client = client or _get_sqs_client(settings)

    async def send(self, batches: list[WorkspaceBatch]) -> DispatchResult:
        """Send every message of every workspace batch.

        A failed wire batch is counted and logged but never raises: the
        claimed messages become eligible again once their claim goes stale.
        """
        result = DispatchResult()
        entries = [to_wire_entry(msg) for batch in batches for msg in batch.messages]

        for chunk in _chunks(entries, self._wire_batch_size):
            result.batch_count += 1
            result.failures += await self._send_batch(chunk)

        return result

    async def _send_batch(self, entries: list[dict]) -> int:
        try:
            response = await asyncio.to_thread(
                self._client.send_message_batch,
                QueueUrl=self._queue_url,
                Entries=entries,
            )
        except Exception as e:
            logger.error("SQS batch send failed (%d entries): %s", len(entries), e)
            return len(entries)

        failed = response.get("Failed") or []
        if failed:
            logger.error(
                "SQS batch send had %d failures: %s",
                len(failed),
                ", ".join(f"{f.get('Id')}={f.get('Code')}" for f in failed),
            )
        return len(failed)


class SqsConsumer:
    """Long-polling receiver that yields records in the Lambda SQS event shape."""

    def __init__(self, settings: QueueSettings, client=None):
        self._queue_url = settings.queue_url
        self._wait_time = settings.wait_time_seconds
        self._visibility_timeout = settings.visibility_timeout
        self._batch_size = settings.wire_batch_size
        self._client = client or _get_sqs_client(settings)

    async def receive(self, max_messages: Optional[int] = None) -> list[dict]:
        response = await asyncio.to_thread(
            self._client.receive_message,
            QueueUrl=self._queue_url,
            MaxNumberOfMessages=max_messages or self._batch_size,
            WaitTimeSeconds=self._wait_time,
            VisibilityTimeout=self._visibility_timeout,
            MessageAttributeNames=["All"],
        )
        return [
            {
                "messageId": m["MessageId"],
                "receiptHandle": m["ReceiptHandle"],
                "body": m["Body"],
                "messageAttributes": m.get("MessageAttributes", {}),
            }
            for m in response.get("Messages", [])
        ]

    async def delete(self, records: list[dict]) -> int:
        """Delete completed records. Returns how many deletes failed."""
        failures = 0
        for chunk in _chunks(records, 10):
            try:
                response = await asyncio.to_thread(
                    self._client.delete_message_batch,
                    QueueUrl=self._queue_url,
                    Entries=[
                        {"Id": str(i), "ReceiptHandle": r["receiptHandle"]}
                        for i, r in enumerate(chunk)
                    ],
                )
                failures += len(response.get("Failed") or [])
            except (BotoCoreError, ClientError) as e:
                logger.error("SQS delete failed (%d records): %s", len(chunk), e)
                failures += len(chunk)
        return failures

"""Thread context reconstruction for a worker batch."""

import asyncio
import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from embedpipe.llm.summarizer import ThreadSummarizer
from embedpipe.pipeline.types import MessageDetail, QueueEntry, ThreadContext
from embedpipe.storage.models import Message

logger = logging.getLogger(__name__)

_DETAIL_COLUMNS = (Message.id, Message.text, Message.body, Message.created_at, Message.parent_message_id)


def _to_detail(row) -> MessageDetail:
    return MessageDetail(
        id=row.id,
        text=row.text or "",
        body=row.body or "",
        created_at=row.created_at,
        parent_message_id=row.parent_message_id,
    )


async def fetch_messages(session: AsyncSession, message_ids: list[UUID]) -> list[MessageDetail]:
    if not message_ids:
        return []
    result = await session.execute(select(*_DETAIL_COLUMNS).where(Message.id.in_(message_ids)))
    return [_to_detail(r) for r in result.all()]


async def fetch_thread_replies(session: AsyncSession, parent_ids: list[UUID]) -> list[MessageDetail]:
    """All replies to any of the parents, oldest first."""
    if not parent_ids:
        return []
    result = await session.execute(
        select(*_DETAIL_COLUMNS)
        .where(Message.parent_message_id.in_(parent_ids))
        .where(Message.deleted_at.is_(None))
        .order_by(Message.created_at.asc(), Message.id.asc())
    )
    return [_to_detail(r) for r in result.all()]


class ThreadContextBuilder:
    """Builds `parent_id -> ThreadContext` for every thread a batch touches.

    Fetch failures are logged and the thread is summarized from whatever
    messages are available; they never abort the batch.
    """

    def __init__(self, db, summarizer: ThreadSummarizer):
        self._db = db
        self._summarizer = summarizer

    async def build(self, entries: list[QueueEntry]) -> dict[UUID, ThreadContext]:
        parent_ids = list(dict.fromkeys(e.parent_message_id for e in entries if e.parent_message_id))
        if not parent_ids:
            return {}

        batch_ids = {e.message_id for e in entries}
        parents_to_fetch = [pid for pid in parent_ids if pid not in batch_ids]

        known: dict[UUID, MessageDetail] = {e.message_id: MessageDetail.from_entry(e) for e in entries}

        try:
            async with self._db.session() as session:
                for detail in await fetch_messages(session, parents_to_fetch):
                    known[detail.id] = detail
        except Exception as e:
            logger.error("Failed to fetch %d parent messages: %s", len(parents_to_fetch), e)

        try:
            async with self._db.session() as session:
                for detail in await fetch_thread_replies(session, parent_ids):
                    # Batch snapshots win over re-read rows
                    known.setdefault(detail.id, detail)
        except Exception as e:
            logger.error("Failed to fetch thread messages for %d threads: %s", len(parent_ids), e)

        threads = {
            parent_id: sorted(
                (m for m in known.values() if m.parent_message_id == parent_id),
                key=lambda m: (m.created_at, str(m.id)),
            )
            for parent_id in parent_ids
        }

        # Summaries are independent; the summarizer falls back instead of raising
        summaries = await asyncio.gather(
            *[self._summarizer.summarize(known.get(pid), replies) for pid, replies in threads.items()]
        )

        context_map: dict[UUID, ThreadContext] = {}
        for (parent_id, replies), summary in zip(threads.items(), summaries):
            context_map[parent_id] = ThreadContext(
                parent_message=known.get(parent_id),
                all_thread_messages=replies,
                thread_summary=summary,
            )

        logger.info("Built context for %d threads", len(context_map))
        return context_map

"""Embedding persistence, completion marking and usage accounting."""

import logging
from datetime import date, datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from embedpipe.llm.embeddings import estimate_tokens
from embedpipe.pipeline.types import Neighbor, QueueEntry, ThreadContext
from embedpipe.storage.models import Message, MessageEmbedding, WorkspaceEmbeddingUsage

logger = logging.getLogger(__name__)

SHORT_ANSWER_MAX_TOKENS = 5

# Columns overwritten when the same message is embedded again
_UPSERT_COLUMNS = (
    "workspace_id",
    "channel_id",
    "conversation_id",
    "parent_message_id",
    "embedding",
    "embedding_model",
    "embedding_version",
    "context_message_ids",
    "context_scores",
    "context_types",
    "thread_summary",
    "is_short_answer",
    "is_thread_message",
    "token_count",
    "updated_at",
)


def build_embedding_record(
    entry: QueueEntry,
    embedding: list[float],
    neighbors: list[Neighbor],
    thread_context: Optional[ThreadContext],
    model: str,
    version: str,
    now: Optional[datetime] = None,
) -> dict:
    """Row values for `message_embeddings`. Token count is of the raw content."""
    now = now or datetime.now(timezone.utc)
    token_count = estimate_tokens(entry.content)
    return {
        "message_id": entry.message_id,
        "workspace_id": entry.workspace_id,
        "channel_id": entry.channel_id,
        "conversation_id": entry.conversation_id,
        "parent_message_id": entry.parent_message_id,
        "embedding": embedding,
        "embedding_model": model,
        "embedding_version": version,
        "context_message_ids": [n.message_id for n in neighbors],
        "context_scores": [n.similarity for n in neighbors],
        "context_types": [n.context_type for n in neighbors],
        "thread_summary": thread_context.thread_summary if thread_context and thread_context.thread_summary else None,
        "is_short_answer": token_count <= SHORT_ANSWER_MAX_TOKENS,
        "is_thread_message": entry.parent_message_id is not None,
        "token_count": token_count,
        "created_at": now,
        "updated_at": now,
    }


async def upsert_embedding(session: AsyncSession, record: dict) -> None:
    """Insert or overwrite the embedding for `record['message_id']`.

    Re-processing the same message converges to one row holding the latest
    values; `created_at` keeps the first insert time.
    """
    stmt = insert(MessageEmbedding).values(**record)
    stmt = stmt.on_conflict_do_update(
        index_elements=[MessageEmbedding.message_id],
        set_={col: stmt.excluded[col] for col in _UPSERT_COLUMNS},
    )
    await session.execute(stmt)


async def mark_processed(session: AsyncSession, message_ids: list[UUID]) -> int:
    """Clear `needs_embedding` (and the claim) for exactly these messages."""
    if not message_ids:
        return 0
    result = await session.execute(
        update(Message)
        .where(Message.id.in_(message_ids))
        .values(needs_embedding=False, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.info("Marked %d messages as embedded", result.rowcount or 0)
    return result.rowcount or 0


def month_start(now: Optional[datetime] = None) -> date:
    now = now or datetime.now(timezone.utc)
    return date(now.year, now.month, 1)


def estimate_cost(tokens: int, cost_per_million_tokens: float) -> float:
    """Linear cost estimate in USD. Not a billing figure."""
    return (tokens / 1_000_000) * cost_per_million_tokens


async def increment_usage(
    session: AsyncSession,
    workspace_id: UUID,
    month: date,
    embeddings: int,
    tokens: int,
    cost: float,
) -> None:
    """Atomically add to the workspace's monthly usage row, creating it on first use."""
    stmt = insert(WorkspaceEmbeddingUsage).values(
        workspace_id=workspace_id,
        month=month,
        total_embeddings_created=embeddings,
        total_tokens_used=tokens,
        estimated_cost_usd=cost,
    )
    table = WorkspaceEmbeddingUsage.__table__
    stmt = stmt.on_conflict_do_update(
        index_elements=[WorkspaceEmbeddingUsage.workspace_id, WorkspaceEmbeddingUsage.month],
        set_={
            "total_embeddings_created": table.c.total_embeddings_created + stmt.excluded.total_embeddings_created,
            "total_tokens_used": table.c.total_tokens_used + stmt.excluded.total_tokens_used,
            "estimated_cost_usd": table.c.estimated_cost_usd + stmt.excluded.estimated_cost_usd,
            "last_updated_at": func.now(),
        },
    )
    await session.execute(stmt)
    await session.commit()


async def get_usage(session: AsyncSession, month: date) -> list[WorkspaceEmbeddingUsage]:
    result = await session.execute(
        select(WorkspaceEmbeddingUsage)
        .where(WorkspaceEmbeddingUsage.month == month)
        .order_by(WorkspaceEmbeddingUsage.total_tokens_used.desc())
    )
    return list(result.scalars().all())

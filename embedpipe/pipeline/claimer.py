"""Work claimer: exclusive selection of messages that need embedding."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import text, update
from sqlalchemy.ext.asyncio import AsyncSession

from embedpipe.pipeline.types import QueueEntry
from embedpipe.storage.models import Message

logger = logging.getLogger(__name__)

# Claim and mark in one statement. SKIP LOCKED makes concurrent claimers
# take disjoint rows instead of blocking on each other.
CLAIM_SQL = text(
    """
    UPDATE messages
    SET claimed_at = :claimed_at
    WHERE id IN (
        SELECT id
        FROM messages
        WHERE needs_embedding = true
          AND deleted_at IS NULL
          AND (claimed_at IS NULL OR claimed_at < :stale_before)
        ORDER BY created_at ASC, id ASC
        LIMIT :limit
        FOR UPDATE SKIP LOCKED
    )
    RETURNING id, workspace_id, channel_id, conversation_id,
              parent_message_id, created_at, body, text
    """
)


async def claim_batch(
    session: AsyncSession,
    limit: int,
    stale_after: timedelta,
    now: Optional[datetime] = None,
) -> list[QueueEntry]:
    """Claim up to `limit` pending messages and return their snapshots.

    A message is eligible when it needs embedding, is not deleted, and is
    either unclaimed or its claim is older than `stale_after`. The claim is
    committed before returning so other claimers see it immediately.
    """
    if limit <= 0:
        return []

    claimed_at = now or datetime.now(timezone.utc)
    result = await session.execute(
        CLAIM_SQL,
        {
            "claimed_at": claimed_at,
            "stale_before": claimed_at - stale_after,
            "limit": limit,
        },
    )
    rows = result.mappings().all()
    await session.commit()

    # RETURNING order is not guaranteed; restore claim order
    entries = sorted((QueueEntry.from_row(r) for r in rows), key=lambda e: (e.created_at, str(e.message_id)))
    if entries:
        logger.info("Claimed %d messages for embedding", len(entries))
    return entries


async def release_messages(session: AsyncSession, message_ids: list[UUID]) -> int:
    """Mark messages as not needing embedding and drop their claim.

    Used for messages that can never be embedded (no content, oversize),
    so they do not return to the pending pool after the staleness window.
    """
    if not message_ids:
        return 0

    result = await session.execute(
        update(Message)
        .where(Message.id.in_(message_ids))
        .values(needs_embedding=False, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount or 0


async def count_pending(session: AsyncSession, stale_after: timedelta, now: Optional[datetime] = None) -> dict:
    """Count pending, in-flight and stale-claimed messages."""
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        text(
            """
            SELECT
                count(*) FILTER (WHERE claimed_at IS NULL) AS pending,
                count(*) FILTER (WHERE claimed_at >= :stale_before) AS claimed,
                count(*) FILTER (WHERE claimed_at < :stale_before) AS stale
            FROM messages
            WHERE needs_embedding = true AND deleted_at IS NULL
            """
        ),
        {"stale_before": now - stale_after},
    )
    row = result.mappings().one()
    return {"pending": row["pending"] or 0, "claimed": row["claimed"] or 0, "stale": row["stale"] or 0}

"""Semantic-neighbor lookup for freshly computed embeddings."""

import asyncio
import logging

from pgvector.sqlalchemy import Vector
from pydantic import ValidationError
from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from embedpipe.config import ContextSettings
from embedpipe.pipeline.types import Neighbor, QueueEntry

logger = logging.getLogger(__name__)

FIND_NEIGHBORS_SQL = text(
    """
    SELECT message_id, similarity, context_type
    FROM find_semantic_neighbors(
        CAST(:embedding AS vector),
        :workspace_id,
        :exclude_message_id,
        :parent_message_id,
        :channel_id,
        :conversation_id,
        :time_window_hours,
        :similarity_threshold,
        :limit
    )
    """
).bindparams(bindparam("embedding", type_=Vector()))


def parse_neighbor_rows(rows, similarity_threshold: float, limit: int) -> list[Neighbor]:
    """Validate raw rows into Neighbors.

    Malformed rows are skipped with a warning. Rows below the threshold are
    dropped, the rest ordered by similarity (highest first) and capped.
    """
    neighbors = []
    for row in rows:
        try:
            neighbor = Neighbor.model_validate(dict(row))
        except (ValidationError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed neighbor row %r: %s", row, e)
            continue
        if neighbor.similarity >= similarity_threshold:
            neighbors.append(neighbor)

    neighbors.sort(key=lambda n: n.similarity, reverse=True)
    return neighbors[:limit]


class NeighborResolver:
    def __init__(self, settings: ContextSettings):
        self.similarity_threshold = settings.similarity_threshold
        self.time_window_hours = settings.time_window_hours
        self.limit = settings.neighbor_limit
        self.timeout = settings.neighbor_timeout_seconds

    async def find(self, session: AsyncSession, embedding: list[float], entry: QueueEntry) -> list[Neighbor]:
        """Neighbors of `entry` in its workspace, scoped by thread/channel/conversation.

        Raises on DB error or timeout; the caller isolates the failure to this message.
        """
        params = {
            "embedding": embedding,
            "workspace_id": entry.workspace_id,
            "exclude_message_id": entry.message_id,
            "parent_message_id": entry.parent_message_id,
            "channel_id": entry.channel_id,
            "conversation_id": entry.conversation_id,
            "time_window_hours": self.time_window_hours,
            "similarity_threshold": self.similarity_threshold,
            "limit": self.limit,
        }
        result = await asyncio.wait_for(session.execute(FIND_NEIGHBORS_SQL, params), timeout=self.timeout)
        return parse_neighbor_rows(result.mappings().all(), self.similarity_threshold, self.limit)

"""SQLAlchemy ORM models for the embedding pipeline."""

import uuid
from datetime import date, datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    ARRAY,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

EMBEDDING_DIMENSIONS = 1536


class Base(DeclarativeBase):
    pass


class Message(Base):
    """Chat message. Only the columns the pipeline reads or writes are mapped."""

    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    channel_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    conversation_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    parent_message_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    text: Mapped[Optional[str]] = mapped_column(Text)
    needs_embedding: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint(
            "(channel_id IS NULL) <> (conversation_id IS NULL)",
            name="ck_messages_single_container",
        ),
        Index(
            "idx_messages_needs_embedding",
            "created_at",
            "id",
            postgresql_where="needs_embedding = TRUE AND deleted_at IS NULL",
        ),
        Index("idx_messages_parent", "parent_message_id", postgresql_where="parent_message_id IS NOT NULL"),
    )


class MessageEmbedding(Base):
    __tablename__ = "message_embeddings"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    message_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), unique=True, nullable=False)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    channel_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    conversation_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    parent_message_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    embedding: Mapped[list[float]] = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=False)
    embedding_model: Mapped[str] = mapped_column(Text, nullable=False)
    embedding_version: Mapped[Optional[str]] = mapped_column(Text)
    context_message_ids: Mapped[list[uuid.UUID]] = mapped_column(ARRAY(UUID(as_uuid=True)), default=list)
    context_scores: Mapped[list[float]] = mapped_column(ARRAY(Float), default=list)
    context_types: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    thread_summary: Mapped[Optional[str]] = mapped_column(Text)
    is_short_answer: Mapped[bool] = mapped_column(Boolean, default=False)
    is_thread_message: Mapped[bool] = mapped_column(Boolean, default=False)
    token_count: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_message_embeddings_workspace", "workspace_id"),
        Index(
            "idx_message_embeddings_hnsw",
            "embedding",
            postgresql_using="hnsw",
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )


class WorkspaceEmbeddingUsage(Base):
    __tablename__ = "workspace_embedding_usage"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    month: Mapped[date] = mapped_column(Date, nullable=False)
    total_embeddings_created: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_tokens_used: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    estimated_cost_usd: Mapped[float] = mapped_column(Numeric(12, 6), default=0, nullable=False)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("workspace_id", "month", name="uq_workspace_embedding_usage_month"),
        CheckConstraint("month = date_trunc('month', month)::date", name="ck_usage_first_of_month"),
    )


# Semantic-neighbor lookup used by the worker. Installed by Database.init_schema().
FIND_SEMANTIC_NEIGHBORS_SQL = """
CREATE OR REPLACE FUNCTION find_semantic_neighbors(
    p_embedding vector,
    p_workspace_id uuid,
    p_exclude_message_id uuid,
    p_parent_message_id uuid DEFAULT NULL,
    p_channel_id uuid DEFAULT NULL,
    p_conversation_id uuid DEFAULT NULL,
    p_time_window_hours integer DEFAULT 48,
    p_similarity_threshold double precision DEFAULT 0.7,
    p_limit integer DEFAULT 10
)
RETURNS TABLE (message_id uuid, similarity double precision, context_type text)
LANGUAGE sql STABLE
AS $$
    SELECT scored.message_id, scored.similarity, scored.context_type
    FROM (
        SELECT
            me.message_id,
            1 - (me.embedding <=> p_embedding) AS similarity,
            CASE
                WHEN p_parent_message_id IS NOT NULL
                     AND (me.parent_message_id = p_parent_message_id OR me.message_id = p_parent_message_id)
                    THEN 'thread'
                WHEN p_channel_id IS NOT NULL AND me.channel_id = p_channel_id THEN 'channel'
                ELSE 'conversation'
            END AS context_type
        FROM message_embeddings me
        JOIN messages m ON m.id = me.message_id
        WHERE me.workspace_id = p_workspace_id
          AND me.message_id <> p_exclude_message_id
          AND m.deleted_at IS NULL
          AND m.created_at >= now() - make_interval(hours => p_time_window_hours)
          AND (
              (p_parent_message_id IS NOT NULL
               AND (me.parent_message_id = p_parent_message_id OR me.message_id = p_parent_message_id))
              OR (p_channel_id IS NOT NULL AND me.channel_id = p_channel_id)
              OR (p_conversation_id IS NOT NULL AND me.conversation_id = p_conversation_id)
          )
    ) scored
    WHERE scored.similarity >= p_similarity_threshold
    ORDER BY scored.similarity DESC
    LIMIT p_limit
$$;
"""

"""Value types passed between pipeline stages."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class QueueEntry(BaseModel):
    """Immutable snapshot of a claimed message, as carried on the queue.

    Serialized with camelCase keys (messageId, workspaceId, ...).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message_id: UUID = Field(alias="messageId")
    workspace_id: UUID = Field(alias="workspaceId")
    channel_id: Optional[UUID] = Field(default=None, alias="channelId")
    conversation_id: Optional[UUID] = Field(default=None, alias="conversationId")
    parent_message_id: Optional[UUID] = Field(default=None, alias="parentMessageId")
    created_at: datetime = Field(alias="createdAt")
    body: str = ""
    text: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "QueueEntry":
        """Build from a `messages` row mapping (RETURNING / SELECT result)."""
        return cls(
            message_id=row["id"],
            workspace_id=row["workspace_id"],
            channel_id=row["channel_id"],
            conversation_id=row["conversation_id"],
            parent_message_id=row["parent_message_id"],
            created_at=row["created_at"],
            body=row["body"] or "",
            text=row["text"],
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @property
    def content(self) -> str:
        """Normalized text to embed: `text` if present, else `body`, stripped."""
        return (self.text or self.body or "").strip()

    @property
    def message_type(self) -> str:
        return "channel" if self.channel_id else "conversation"

    @property
    def is_thread_message(self) -> bool:
        return self.parent_message_id is not None


@dataclass
class WorkspaceBatch:
    workspace_id: UUID
    messages: list[QueueEntry]


@dataclass
class MessageDetail:
    id: UUID
    text: str
    body: str
    created_at: datetime
    parent_message_id: Optional[UUID] = None

    @classmethod
    def from_entry(cls, entry: QueueEntry) -> "MessageDetail":
        return cls(
            id=entry.message_id,
            text=entry.text or "",
            body=entry.body,
            created_at=entry.created_at,
            parent_message_id=entry.parent_message_id,
        )

    @property
    def content(self) -> str:
        return (self.text or self.body or "").strip()


@dataclass
class ThreadContext:
    parent_message: Optional[MessageDetail]
    all_thread_messages: list[MessageDetail]
    thread_summary: str


class Neighbor(BaseModel):
    """One row of the semantic-neighbor lookup."""

    message_id: UUID
    similarity: float = Field(ge=-1.0, le=1.0)
    context_type: str


@dataclass
class MessageOutcome:
    """Result of persisting one message; `error` is set when it failed."""

    message_id: UUID
    workspace_id: UUID
    token_count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchReport:
    received: int = 0
    succeeded: list[UUID] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    tokens: int = 0
    threads: int = 0
    usage_errors: int = 0
    batch_item_failures: list[str] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

"""Shared test fixtures."""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from embedpipe.config import Settings
from embedpipe.pipeline.types import MessageDetail, QueueEntry

BASE_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_entry(**overrides) -> QueueEntry:
    """Create a QueueEntry snapshot for testing."""
    defaults = {
        "message_id": uuid.uuid4(),
        "workspace_id": uuid.uuid4(),
        "channel_id": uuid.uuid4(),
        "conversation_id": None,
        "parent_message_id": None,
        "created_at": BASE_TIME,
        "body": "Hello, this is a test message.",
        "text": None,
    }
    defaults.update(overrides)
    return QueueEntry(**defaults)


def make_detail(**overrides) -> MessageDetail:
    """Create a MessageDetail for thread tests."""
    defaults = {
        "id": uuid.uuid4(),
        "text": "",
        "body": "A thread message.",
        "created_at": BASE_TIME,
        "parent_message_id": None,
    }
    defaults.update(overrides)
    return MessageDetail(**defaults)


def make_row(**overrides) -> dict:
    """A `messages` row mapping as returned by RETURNING / SELECT."""
    defaults = {
        "id": uuid.uuid4(),
        "workspace_id": uuid.uuid4(),
        "channel_id": uuid.uuid4(),
        "conversation_id": None,
        "parent_message_id": None,
        "created_at": BASE_TIME,
        "body": "row body",
        "text": None,
    }
    defaults.update(overrides)
    return defaults


def minutes_after(minutes: int) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


def make_session(rows=None, rowcount=0):
    """Mock AsyncSession whose execute() returns a result carrying `rows`."""
    session = AsyncMock()
    result = MagicMock()
    result.rowcount = rowcount
    result.mappings.return_value.all.return_value = rows or []
    result.all.return_value = rows or []
    session.execute = AsyncMock(return_value=result)
    return session


class FakeDatabase:
    """Stand-in for Database that hands out the same mock session each time."""

    def __init__(self, session=None):
        self.sessions_opened = 0
        self.mock_session = session or make_session()

    @asynccontextmanager
    async def session(self):
        self.sessions_opened += 1
        yield self.mock_session


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def fake_db():
    return FakeDatabase()

"""Workspace batching for claimed messages."""

import logging
from uuid import UUID

from embedpipe.pipeline.types import QueueEntry, WorkspaceBatch

logger = logging.getLogger(__name__)


def partition_embeddable(entries: list[QueueEntry], max_chars: int) -> tuple[list[QueueEntry], list[UUID]]:
    """Split entries into embeddable ones and ids that can never be embedded.

    A message is not embeddable if its normalized content is empty or longer
    than `max_chars`.
    """
    valid: list[QueueEntry] = []
    invalid: list[UUID] = []

    for entry in entries:
        content = entry.content
        if not content:
            logger.debug("Message %s has no content, skipping", entry.message_id)
            invalid.append(entry.message_id)
        elif len(content) > max_chars:
            logger.info("Message %s is too long (%d chars), skipping", entry.message_id, len(content))
            invalid.append(entry.message_id)
        else:
            valid.append(entry)

    return valid, invalid


def group_by_workspace(entries: list[QueueEntry]) -> list[WorkspaceBatch]:
    """Group entries by workspace, smallest workspaces first.

    Entries with empty normalized content are dropped. Ties keep the order in
    which workspaces were first seen.
    """
    groups: dict[UUID, list[QueueEntry]] = {}
    for entry in entries:
        if not entry.content:
            continue
        groups.setdefault(entry.workspace_id, []).append(entry)

    batches = [WorkspaceBatch(workspace_id=ws, messages=msgs) for ws, msgs in groups.items()]
    batches.sort(key=lambda b: len(b.messages))
    return batches

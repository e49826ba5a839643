"""Thread summarization using Claude Haiku."""

import logging
import time
from typing import Optional

import anthropic

from embedpipe.config import AnthropicSettings
from embedpipe.pipeline.types import MessageDetail

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM = """Summarize this conversation into one concise paragraph, preserving key points and context.
Do not include any additional information or context not present in the conversation.
This summary will be used to provide context for a semantic search query."""


def thread_transcript(parent: Optional[MessageDetail], replies: list[MessageDetail]) -> str:
    """Parent followed by replies, blank-line separated."""
    messages = ([parent] if parent else []) + list(replies)
    return "\n\n".join(m.content for m in messages if m.content)


class ThreadSummarizer:
    """Produces a short abstractive summary of a thread.

    Never raises: any failure returns the raw transcript instead.
    """

    def __init__(self, settings: AnthropicSettings, client: Optional[anthropic.AsyncAnthropic] = None):
        self._settings = settings
        self._client = client
        if self._client is None and settings.api_key:
            self._client = anthropic.AsyncAnthropic(
                api_key=settings.api_key,
                timeout=settings.timeout_seconds,
                max_retries=1,
            )

    async def summarize(self, parent: Optional[MessageDetail], replies: list[MessageDetail]) -> str:
        transcript = thread_transcript(parent, replies)
        if not transcript:
            return ""

        if self._client is None:
            logger.debug("No Anthropic API key configured, using raw thread text")
            return transcript

        start_time = time.time()
        try:
            response = await self._client.messages.create(
                model=self._settings.model,
                max_tokens=self._settings.max_tokens,
                temperature=0.2,
                system=SUMMARY_SYSTEM,
                messages=[{"role": "user", "content": transcript}],
            )
            summary = "".join(
                block.text for block in response.content if getattr(block, "type", "") == "text"
            ).strip()
        except Exception as e:
            logger.warning("Thread summary failed, falling back to raw text: %s", e)
            return transcript

        if not summary:
            logger.warning("Empty thread summary from LLM, falling back to raw text")
            return transcript

        logger.debug(
            "Summarized %d thread messages in %dms (%d input tokens)",
            len(replies) + (1 if parent else 0),
            int((time.time() - start_time) * 1000),
            response.usage.input_tokens,
        )
        return summary

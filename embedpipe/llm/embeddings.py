"""Batched text embeddings via the OpenAI API."""

import logging
import math
from typing import Optional

from openai import AsyncOpenAI, OpenAIError

from embedpipe.config import EmbeddingSettings, OpenAISettings
from embedpipe.pipeline.types import QueueEntry, ThreadContext

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
TRUNCATION_MARGIN = 0.9


class EmbeddingRequestError(RuntimeError):
    """The batched embedding call failed; the whole batch must be retried."""


def estimate_tokens(text: str) -> int:
    """Approximate token count from character length (~4 chars per token)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_to_token_limit(text: str, max_tokens: int) -> str:
    if estimate_tokens(text) <= max_tokens:
        return text
    return text[: math.floor(max_tokens * CHARS_PER_TOKEN * TRUNCATION_MARGIN)]


def context_for(entry: QueueEntry, context_map: dict) -> Optional[ThreadContext]:
    """Thread context for a reply (keyed by its parent) or a parent (keyed by itself)."""
    return context_map.get(entry.parent_message_id or entry.message_id)


def enrich_content(content: str, thread_context: Optional[ThreadContext], max_tokens: int) -> str:
    """Prefix content with the thread summary, trimming content to fit the budget."""
    if thread_context is None or not thread_context.thread_summary:
        return content

    prefix = f"[Thread context: {thread_context.thread_summary}] "
    max_content_chars = max(max_tokens * CHARS_PER_TOKEN - len(prefix), 0)
    return prefix + content[:max_content_chars]


def build_inputs(entries: list[QueueEntry], context_map: dict, max_tokens: int) -> list[str]:
    """One embedding input per entry, in entry order."""
    return [
        truncate_to_token_limit(
            enrich_content(entry.content, context_for(entry, context_map), max_tokens),
            max_tokens,
        )
        for entry in entries
    ]


class Embedder:
    """Issues one embedding request per worker batch."""

    def __init__(
        self,
        openai_settings: OpenAISettings,
        embedding_settings: EmbeddingSettings,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = embedding_settings.model
        self.dimensions = embedding_settings.dimensions
        self._client = client or AsyncOpenAI(
            api_key=openai_settings.api_key,
            timeout=openai_settings.timeout_seconds,
            max_retries=openai_settings.max_retries,
        )

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed all texts in a single call; vector i belongs to texts[i]."""
        if not texts:
            return []

        try:
            response = await self._client.embeddings.create(
                model=self.model,
                input=texts,
                encoding_format="float",
                dimensions=self.dimensions,
            )
        except OpenAIError as e:
            raise EmbeddingRequestError(f"Embedding request failed for {len(texts)} inputs: {e}") from e

        data = sorted(response.data, key=lambda d: d.index)
        if len(data) != len(texts):
            raise EmbeddingRequestError(
                f"Embedding response has {len(data)} vectors for {len(texts)} inputs"
            )

        vectors = [list(d.embedding) for d in data]
        for i, vector in enumerate(vectors):
            if len(vector) != self.dimensions:
                raise EmbeddingRequestError(
                    f"Embedding {i} has {len(vector)} dimensions, expected {self.dimensions}"
                )

        logger.info(
            "Embedded %d inputs with %s (%s prompt tokens)",
            len(texts),
            self.model,
            getattr(getattr(response, "usage", None), "prompt_tokens", "?"),
        )
        return vectors

# =============================================================================
# Embedding Service — Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API.
# The rerank engine consumes embeddings through the async `Embedder`
# protocol; `OpenAIEmbedder` adapts the synchronous SDK calls below by
# running them in a worker thread.
#
# DESIGN DECISION: One dimensionality per embedder.
# Query embeddings are compared against pre-computed file chunk
# embeddings. `OpenAIEmbedder` remembers the dimension of the first vector
# it produced and raises EmbeddingDimensionError if the provider ever
# returns a different length, instead of letting mismatched vectors reach
# the similarity computation.
#
# TOKEN LIMITS:
# - Each text: max 8,191 tokens
# - We batch at 100 texts per API call (configurable via settings)
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Protocol

from openai import OpenAI

from app.config import settings
from app.exceptions import EmbeddingDimensionError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Embedding Client — Lazy Singleton
# ---------------------------------------------------------------------------
# API key resolution order:
#   1. OPENAI_API_KEY (explicit embedding key)
#   2. LLM_API_KEY (shared key for an OpenAI-compatible provider)
# ---------------------------------------------------------------------------

_client: OpenAI | None = None


def _get_client() -> OpenAI:
    """Lazily initialize and cache the embedding client."""
    global _client
    if _client is None:
        resolved_key = settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        _client = OpenAI(**client_kwargs)

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            settings.embedding_model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


# ---------------------------------------------------------------------------
# Sync API
# ---------------------------------------------------------------------------


def embed_batch(
    texts: Sequence[str],
    batch_size: int | None = None,
) -> list[list[float]]:
    """
    Generate embeddings for a batch of texts.

    Processes texts in sub-batches to respect API token limits.
    Returns embeddings in the SAME ORDER as the input texts.

    Raises:
        ValueError: If no embedding API key is configured.
        openai.APIError: If the API call fails.
    """
    if not texts:
        return []

    client = _get_client()
    _batch_size = batch_size or settings.embedding_batch_size

    all_embeddings: list[list[float]] = [[] for _ in texts]

    for i in range(0, len(texts), _batch_size):
        batch = list(texts[i : i + _batch_size])
        logger.debug(
            "Embedding batch %d–%d of %d texts (model=%s)",
            i + 1,
            min(i + _batch_size, len(texts)),
            len(texts),
            settings.embedding_model,
        )

        create_kwargs: dict = {
            "model": settings.embedding_model,
            "input": batch,
        }
        if settings.embedding_dimensions:
            create_kwargs["dimensions"] = settings.embedding_dimensions

        response = client.embeddings.create(**create_kwargs)

        # Sort by index so output order always matches input order
        for item in sorted(response.data, key=lambda x: x.index):
            all_embeddings[i + item.index] = item.embedding

    logger.info(
        "Generated %d embeddings (model=%s)",
        len(texts),
        settings.embedding_model,
    )
    return all_embeddings


def embed_query(text: str) -> list[float]:
    """Generate an embedding for a single query string."""
    result = embed_batch([text], batch_size=1)
    return result[0]


# ---------------------------------------------------------------------------
# Async Protocol + Adapter
# ---------------------------------------------------------------------------


class Embedder(Protocol):
    """Async embedding interface consumed by the rerank engine."""

    async def embed_query(self, text: str) -> list[float]:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        ...


class OpenAIEmbedder:
    """
    Async adapter over the sync embedding functions.

    The OpenAI client is blocking, so calls run in `asyncio.to_thread()`
    to keep the event loop free.
    """

    def __init__(self, expected_dimension: int | None = None) -> None:
        self._dimension = expected_dimension or settings.embedding_dimensions or None

    @property
    def dimension(self) -> int | None:
        return self._dimension

    def _check(self, vectors: list[list[float]]) -> list[list[float]]:
        for vector in vectors:
            if self._dimension is None:
                self._dimension = len(vector)
            elif len(vector) != self._dimension:
                raise EmbeddingDimensionError(self._dimension, len(vector))
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        vector = await asyncio.to_thread(embed_query, text)
        return self._check([vector])[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors = await asyncio.to_thread(embed_batch, list(texts))
        return self._check(vectors)


_embedder: OpenAIEmbedder | None = None


def get_embedder() -> OpenAIEmbedder:
    """Lazy singleton for the configured embedder."""
    global _embedder
    if _embedder is None:
        _embedder = OpenAIEmbedder()
    return _embedder

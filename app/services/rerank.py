# =============================================================================
# Rerank Engine — Similarity Scoring of Web Documents and File Chunks
# =============================================================================
#
# Turns the collected candidates (web documents + local file chunks) into
# the ranked context window handed to the answer generator.
#
# MODES:
#   speed    — only local chunks are scored (their embeddings already
#              exist); web documents fill the remaining slots unscored.
#   balanced — the query and every web document are embedded; web
#              documents and local chunks are scored together.
#   quality  — runs balanced scoring.
#
# INVARIANTS:
#   - a score must be strictly greater than the threshold to survive
#   - at most `rerank_max_results` documents are returned
#   - in speed mode with web documents present, at most
#     `rerank_speed_local_cap` local chunks are kept
#   - ordering is descending by score; ties keep input order
#   - vectors of different length are never compared
#
# DESIGN DECISION: numpy for cosine similarity.
# One vectorised dot product per candidate set instead of Python loops,
# and zero-norm vectors are mapped to a score of 0.0 instead of NaN.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np

from app.agents.types import LocalChunk, OptimizationMode, RetrievedDocument
from app.config import settings
from app.exceptions import EmbeddingDimensionError
from app.services.embedder import Embedder

logger = logging.getLogger(__name__)

SUMMARIZE_QUERY = "summarize"


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity between two vectors.

    Raises:
        EmbeddingDimensionError: If the vectors differ in length.
    """
    if len(a) != len(b):
        raise EmbeddingDimensionError(len(a), len(b))
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def batch_cosine_similarity(
    query: Sequence[float],
    candidates: Sequence[Sequence[float]],
) -> list[float]:
    """
    Cosine similarity of `query` against each candidate vector.

    Raises:
        EmbeddingDimensionError: If any candidate differs in length.
    """
    if not candidates:
        return []
    for vector in candidates:
        if len(vector) != len(query):
            raise EmbeddingDimensionError(len(query), len(vector))

    q = np.asarray(query, dtype=np.float64)
    matrix = np.asarray(candidates, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    dots = matrix @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, dots / norms, 0.0)
    return [float(s) for s in scores]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class RerankEngine:
    """
    Rank web documents and local chunks for one query.

    Args:
        embedder: Async embedding collaborator.
        threshold: Strict lower bound on similarity (default from settings).
        max_results: Cap on returned documents (default from settings).
        speed_local_cap: Cap on local chunks in speed mode when web
            documents are present (default from settings).
    """

    def __init__(
        self,
        embedder: Embedder,
        threshold: float | None = None,
        max_results: int | None = None,
        speed_local_cap: int | None = None,
    ) -> None:
        self._embedder = embedder
        self.threshold = settings.rerank_threshold if threshold is None else threshold
        self.max_results = max_results or settings.rerank_max_results
        self.speed_local_cap = speed_local_cap or settings.rerank_speed_local_cap

    async def rerank(
        self,
        query: str,
        documents: list[RetrievedDocument],
        local_chunks: list[LocalChunk] | None = None,
        mode: OptimizationMode | str = OptimizationMode.BALANCED,
    ) -> list[RetrievedDocument]:
        """
        Return the ranked context window.

        Raises:
            EmbeddingDimensionError: If query and candidate embeddings differ
                in length.
        """
        local_chunks = local_chunks or []
        mode = OptimizationMode(mode)

        if not documents and not local_chunks:
            return []

        if query.strip().lower() == SUMMARIZE_QUERY:
            return documents[: self.max_results]

        with_content = [d for d in documents if d.content]

        if mode is OptimizationMode.SPEED:
            ranked = await self._rank_speed(query, with_content, local_chunks)
        else:
            if mode is OptimizationMode.QUALITY:
                logger.info("Quality rerank requested; using balanced scoring")
            ranked = await self._rank_balanced(query, with_content, local_chunks)

        logger.info(
            "Reranked %d web docs + %d local chunks → %d (mode=%s)",
            len(with_content), len(local_chunks), len(ranked), mode.value,
        )
        return ranked

    # -------------------------------------------------------------------------
    # Modes
    # -------------------------------------------------------------------------

    async def _rank_speed(
        self,
        query: str,
        documents: list[RetrievedDocument],
        local_chunks: list[LocalChunk],
    ) -> list[RetrievedDocument]:
        if not local_chunks:
            return documents[: self.max_results]

        query_embedding = await self._embedder.embed_query(query)
        scores = batch_cosine_similarity(
            query_embedding, [c.embedding for c in local_chunks],
        )
        local = self._select(
            [c.to_document(s) for c, s in zip(local_chunks, scores)],
        )
        if documents:
            local = local[: self.speed_local_cap]

        remaining = self.max_results - len(local)
        return local + documents[:remaining]

    async def _rank_balanced(
        self,
        query: str,
        documents: list[RetrievedDocument],
        local_chunks: list[LocalChunk],
    ) -> list[RetrievedDocument]:
        query_embedding = await self._embedder.embed_query(query)
        doc_embeddings = await self._embedder.embed_batch([d.content for d in documents])

        candidates = list(documents) + [c.to_document() for c in local_chunks]
        embeddings = list(doc_embeddings) + [list(c.embedding) for c in local_chunks]
        scores = batch_cosine_similarity(query_embedding, embeddings)

        return self._select(
            [doc.with_score(score) for doc, score in zip(candidates, scores)],
        )

    def _select(self, scored: list[RetrievedDocument]) -> list[RetrievedDocument]:
        """Keep scores strictly above the threshold, stable sort, cap."""
        kept = [
            d for d in scored
            if d.similarity_score is not None and d.similarity_score > self.threshold
        ]
        kept.sort(key=lambda d: d.similarity_score, reverse=True)
        return kept[: self.max_results]

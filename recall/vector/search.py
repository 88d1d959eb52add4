"""
Cosine similarity search over a user's stored memory embeddings, plain and
hybrid (query + hypothetical document).
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from ..core.dao import MemoryStore
from ..core.errors import Disabled, ProviderUnavailable
from ..core.schema import MemoryEmbedding, SearchResult
from ..util.logging import logger
from .embeddings import EmbeddingService

QUERY_WEIGHT = 0.4
HYDE_WEIGHT = 0.6


@dataclass
class SearchOutcome:
    results: List[SearchResult]
    query: str
    result_count: int
    execution_time_ms: int
    hyde_used: bool = False
    hypothetical_document: Optional[str] = None


def cosine_similarities(query_vector: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query_vector`` against each row; zero-norm rows score 0."""
    query_norm = np.linalg.norm(query_vector)
    row_norms = np.linalg.norm(matrix, axis=1)
    if query_norm == 0:
        return np.zeros(len(matrix))

    denominators = row_norms * query_norm
    dots = matrix @ query_vector
    with np.errstate(divide="ignore", invalid="ignore"):
        similarities = np.where(denominators > 0, dots / denominators, 0.0)
    return similarities


def fuse_scores(query_score: Optional[float], hyde_score: Optional[float]) -> float:
    """Combine the two pathway scores for one memory.

    With both present the result is ``max(0.4*q + 0.6*h, max(q, h))``, which
    always equals ``max(q, h)``; the weighted term is kept for compatibility
    with existing rankings.
    """
    if query_score is None:
        return hyde_score
    if hyde_score is None:
        return query_score
    weighted = QUERY_WEIGHT * query_score + HYDE_WEIGHT * hyde_score
    return max(weighted, max(query_score, hyde_score))


class VectorSearchEngine:
    """Ranks a user's memories by similarity to a query vector."""

    def __init__(self, store: MemoryStore, embedding_service: EmbeddingService = None, hyde=None):
        self.store = store
        self.embedding_service = embedding_service
        self.hyde = hyde

    async def search_similar(self, user_id: str, query_vector: Sequence[float], limit: int = 10,
                             threshold: float = 0.0) -> List[SearchResult]:
        """Return up to ``limit`` memories with similarity >= ``threshold``, best first.

        Only embeddings with the query vector's dimension are compared. A
        threshold of 0 disables filtering.
        """
        query = np.asarray(query_vector, dtype=np.float32)
        rows = await self.store.fetch_embeddings(user_id, len(query))
        if not rows:
            return []

        matrix = np.vstack([vector for _, vector in rows])
        similarities = cosine_similarities(query, matrix)

        results = []
        for (memory, _), similarity in zip(rows, similarities):
            score = float(similarity)
            if threshold > 0 and score < threshold:
                continue
            results.append(SearchResult(memory=memory, similarity_score=score, combined_score=score))

        results.sort(key=lambda r: r.similarity_score, reverse=True)
        return results[:limit]

    async def hybrid_search(self, user_id: str, query_vector: Sequence[float], hyde_vector: Sequence[float],
                            limit: int = 10, threshold: float = 0.0) -> List[SearchResult]:
        """Search with both vectors and merge the two result lists by memory id."""
        query_results, hyde_results = await asyncio.gather(
            self.search_similar(user_id, query_vector, limit, threshold),
            self.search_similar(user_id, hyde_vector, limit, threshold)
        )

        merged: Dict[str, Dict] = {}
        for result in query_results:
            merged[result.memory.id] = {"memory": result.memory, "query": result.similarity_score, "hyde": None}
        for result in hyde_results:
            entry = merged.setdefault(result.memory.id, {"memory": result.memory, "query": None, "hyde": None})
            entry["hyde"] = result.similarity_score

        combined = []
        for entry in merged.values():
            q, h = entry["query"], entry["hyde"]
            if q is not None and h is not None:
                method = "combined"
            elif h is not None:
                method = "hyde"
            else:
                method = "query"
            combined.append(SearchResult(
                memory=entry["memory"],
                similarity_score=q if q is not None else h,
                combined_score=fuse_scores(q, h),
                search_method=method,
                hyde_score=h
            ))

        # stable: ties keep query-pathway order first
        combined.sort(key=lambda r: r.combined_score, reverse=True)
        return combined[:limit]

    async def search(self, user_id: str, query: str, limit: int = 10, threshold: float = 0.0,
                     use_hyde: bool = True) -> SearchOutcome:
        """Embed ``query`` and search, fusing in a HyDE pathway when requested and available."""
        start_time = time.time()
        hypothetical_document = None
        await self.backfill_embeddings(user_id)

        if use_hyde and self.hyde is not None:
            query_vector, document = await asyncio.gather(
                self.embedding_service.embed(query),
                self._generate_hyde(query)
            )
            if document is not None:
                hypothetical_document = document
                hyde_vector = await self.embedding_service.embed(document)
                results = await self.hybrid_search(user_id, query_vector, hyde_vector, limit, threshold)
            else:
                results = await self.search_similar(user_id, query_vector, limit, threshold)
        else:
            query_vector = await self.embedding_service.embed(query)
            results = await self.search_similar(user_id, query_vector, limit, threshold)

        execution_time_ms = int((time.time() - start_time) * 1000)
        hyde_used = hypothetical_document is not None
        logger.log_search(user_id, "hybrid" if hyde_used else "query", len(results), execution_time_ms, {
            "limit": limit,
            "threshold": threshold
        })

        return SearchOutcome(
            results=results,
            query=query,
            result_count=len(results),
            execution_time_ms=execution_time_ms,
            hyde_used=hyde_used,
            hypothetical_document=hypothetical_document
        )

    async def _generate_hyde(self, query: str) -> Optional[str]:
        try:
            return await self.hyde.generate(query)
        except Disabled:
            return None

    async def backfill_embeddings(self, user_id: str, limit: int = 50) -> int:
        """Embed memories that were stored while the provider was unavailable.

        Returns the number of memories that received an embedding.
        """
        pending = await self.store.list_unembedded(user_id, limit)
        if not pending:
            return 0

        try:
            vectors = await self.embedding_service.embed_batch([memory.embedding_text() for memory in pending])
        except ProviderUnavailable as e:
            logger.warning(f"Embedding backfill for user {user_id} postponed: {e}")
            return 0

        for memory, vector in zip(pending, vectors):
            await self.store.set_embedding(
                memory.id,
                MemoryEmbedding(memory_id=memory.id, vector=vector, model_name=self.embedding_service.model_name)
            )
            logger.log_memory_operation("embed", memory.id, user_id, details={"backfill": True})
        return len(pending)

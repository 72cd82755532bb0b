"""Linear cosine-similarity search over per-knowledge vector sets."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Iterable, Sequence
from math import sqrt
from numbers import Real
from typing import Any

from knowledge_rag.errors import DimensionMismatchError, InvalidEmbeddingError
from knowledge_rag.obs.tracing import Timer
from knowledge_rag.types import (
    KnowledgeId,
    KnowledgeVectorSet,
    SearchCandidate,
    SearchResponse,
)

logger = logging.getLogger(__name__)

QueryEmbedder = Callable[[str], Awaitable[list[float]]]
BatchEmbedder = Callable[[list[str]], Awaitable[list[list[float]]]]
CandidateFilter = Callable[[SearchCandidate], bool]


def is_valid_embedding(value: Any) -> bool:
    """True for a non-empty sequence of real numbers."""
    if not isinstance(value, (list, tuple)) or not value:
        return False
    return all(isinstance(x, Real) and not isinstance(x, bool) for x in value)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between `a` and `b`; 0.0 when either has zero norm."""
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)


class QueryEmbeddingCache:
    """Bounded LRU cache of query embeddings keyed by the raw query text."""

    def __init__(self, max_size: int = 100) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._entries: OrderedDict[str, list[float]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, query: str) -> list[float] | None:
        embedding = self._entries.get(query)
        if embedding is None:
            self.misses += 1
            return None
        self._entries.move_to_end(query)
        self.hits += 1
        return list(embedding)

    def put(self, query: str, embedding: Sequence[float]) -> None:
        self._entries[query] = list(embedding)
        self._entries.move_to_end(query)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def stats(self) -> dict[str, int]:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
        }

    def __contains__(self, query: object) -> bool:
        return query in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def filter_knowledge_sets(
    knowledge_vectors: Iterable[KnowledgeVectorSet],
    knowledge_ids: Iterable[KnowledgeId] | None,
) -> list[KnowledgeVectorSet]:
    """Keep the sets whose id is in `knowledge_ids`; ids compare as strings."""
    if knowledge_ids is None:
        return list(knowledge_vectors)
    wanted = {str(knowledge_id) for knowledge_id in knowledge_ids}
    return [vector_set for vector_set in knowledge_vectors if str(vector_set.knowledge_id) in wanted]


def document_id_filter(document_ids: Iterable[KnowledgeId]) -> CandidateFilter:
    """Build a candidate filter matching `metadata["document_id"]`."""
    wanted = {str(document_id) for document_id in document_ids}

    def _matches(candidate: SearchCandidate) -> bool:
        value = candidate.metadata.get("document_id")
        return value is not None and str(value) in wanted

    return _matches


class SimilaritySearchEngine:
    """Ranks stored chunks against a query by cosine similarity.

    The query is embedded once per call through `embed_query` (cached by
    raw text). Every chunk of every supplied set is scanned; chunks with a
    missing or non-numeric embedding are skipped, a vector of a different
    length than the query aborts the search with `DimensionMismatchError`.
    """

    def __init__(
        self,
        embed_query: QueryEmbedder,
        cache: QueryEmbeddingCache | None = None,
        *,
        embed_documents: BatchEmbedder | None = None,
    ) -> None:
        self._embed_query = embed_query
        self._embed_documents = embed_documents
        self.cache = cache if cache is not None else QueryEmbeddingCache()

    async def get_query_embedding(self, query: str) -> list[float]:
        cached = self.cache.get(query)
        if cached is not None:
            return cached
        embedding = list(await self._embed_query(query))
        if not is_valid_embedding(embedding):
            raise InvalidEmbeddingError("Query embedding is empty or not numeric")
        self.cache.put(query, embedding)
        return embedding

    async def search_similar(
        self,
        query: str,
        knowledge_vectors: Sequence[KnowledgeVectorSet],
        max_results: int = 5,
        threshold: float = 0.1,
        candidate_filter: CandidateFilter | None = None,
    ) -> SearchResponse:
        with Timer() as timer:
            query_embedding = await self.get_query_embedding(query)
            results, scanned = self._rank(
                query_embedding, knowledge_vectors, max_results, threshold, candidate_filter
            )
        logger.debug(
            "Search scanned %d chunks across %d sets, %d results in %.1fms",
            scanned,
            len(knowledge_vectors),
            len(results),
            timer.elapsed_ms,
        )
        return SearchResponse(
            results=results,
            search_time_ms=timer.elapsed_ms,
            total_candidates_scanned=scanned,
        )

    def search_with_embedding(
        self,
        query_embedding: Sequence[float],
        knowledge_vectors: Sequence[KnowledgeVectorSet],
        max_results: int = 5,
        threshold: float = 0.1,
        candidate_filter: CandidateFilter | None = None,
    ) -> SearchResponse:
        """Search with a precomputed query vector."""

        if not is_valid_embedding(list(query_embedding)):
            raise InvalidEmbeddingError("Query embedding is empty or not numeric")
        with Timer() as timer:
            results, scanned = self._rank(
                query_embedding, knowledge_vectors, max_results, threshold, candidate_filter
            )
        return SearchResponse(
            results=results,
            search_time_ms=timer.elapsed_ms,
            total_candidates_scanned=scanned,
        )

    async def batch_search(
        self,
        queries: Sequence[str],
        knowledge_vectors: Sequence[KnowledgeVectorSet],
        max_results: int = 5,
        threshold: float = 0.1,
        candidate_filter: CandidateFilter | None = None,
    ) -> list[SearchResponse]:
        """Search many queries, embedding the uncached ones in a single batch."""

        resolved: dict[str, list[float]] = {}
        missing: list[str] = []
        for query in dict.fromkeys(queries):
            cached = self.cache.get(query)
            if cached is None:
                missing.append(query)
            else:
                resolved[query] = cached

        if missing:
            if self._embed_documents is not None:
                embeddings = await self._embed_documents(missing)
            else:
                embeddings = await asyncio.gather(*(self._embed_query(query) for query in missing))
            for query, embedding in zip(missing, embeddings, strict=True):
                embedding = list(embedding)
                if not is_valid_embedding(embedding):
                    raise InvalidEmbeddingError(f"Embedding for query {query!r} is empty or not numeric")
                self.cache.put(query, embedding)
                resolved[query] = embedding

        return [
            self.search_with_embedding(
                resolved[query], knowledge_vectors, max_results, threshold, candidate_filter
            )
            for query in queries
        ]

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> dict[str, int]:
        return self.cache.stats()

    def get_stats(self, knowledge_vectors: Sequence[KnowledgeVectorSet]) -> dict[str, Any]:
        """Summarize the searchable content of `knowledge_vectors`."""

        total_chunks = 0
        valid = 0
        dimension: int | None = None
        for vector_set in knowledge_vectors:
            for chunk in vector_set.chunks:
                total_chunks += 1
                if is_valid_embedding(chunk.embedding):
                    valid += 1
                    if dimension is None:
                        dimension = len(chunk.embedding)
        return {
            "knowledge_items": len(knowledge_vectors),
            "total_chunks": total_chunks,
            "valid_embeddings": valid,
            "embedding_dimension": dimension,
            "cache": self.cache_stats(),
        }

    @staticmethod
    def _rank(
        query_embedding: Sequence[float],
        knowledge_vectors: Sequence[KnowledgeVectorSet],
        max_results: int,
        threshold: float,
        candidate_filter: CandidateFilter | None,
    ) -> tuple[list[SearchCandidate], int]:
        candidates: list[SearchCandidate] = []
        scanned = 0
        skipped = 0

        for vector_set in knowledge_vectors:
            for position, chunk in enumerate(vector_set.chunks):
                scanned += 1
                if not is_valid_embedding(chunk.embedding):
                    skipped += 1
                    continue
                score = cosine_similarity(query_embedding, chunk.embedding)
                if score < threshold:
                    continue
                metadata = dict(chunk.metadata)
                candidate = SearchCandidate(
                    content=chunk.content,
                    score=score,
                    metadata=metadata,
                    knowledge_id=vector_set.knowledge_id,
                    chunk_id=str(metadata.get("id") or f"{vector_set.knowledge_id}_chunk_{position}"),
                )
                if candidate_filter is not None and not candidate_filter(candidate):
                    continue
                candidates.append(candidate)

        if skipped:
            logger.debug("Skipped %d chunks with invalid embeddings", skipped)

        candidates.sort(key=lambda candidate: candidate.score, reverse=True)
        return candidates[:max_results], scanned

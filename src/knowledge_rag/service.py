"""Knowledge-level indexing and search orchestration."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from knowledge_rag.config import RAGConfig
from knowledge_rag.errors import ConfigurationError, KnowledgeStoreError, RAGError
from knowledge_rag.ingest.embedder import Embedder, EmbeddingService, EmbeddingsPool
from knowledge_rag.retrieval.search import (
    QueryEmbeddingCache,
    SimilaritySearchEngine,
    document_id_filter,
)
from knowledge_rag.storage.knowledge_store import (
    JsonKnowledgeVectorRepository,
    KnowledgeVectorRepository,
)
from knowledge_rag.types import (
    EmbeddedChunk,
    IndexResult,
    KnowledgeId,
    KnowledgeSearchResult,
    KnowledgeVectorSet,
    RAGStats,
)

logger = logging.getLogger(__name__)


class KnowledgeRAGService:
    """Indexes knowledge items into per-knowledge vector sets and searches them.

    Indexing chunks the content, embeds all chunks in one batched call and
    overwrites the stored set wholesale. Searching loads the requested sets
    concurrently and ranks them with `SimilaritySearchEngine`. Every public
    operation waits for `initialize()` and fails with `ConfigurationError`
    when it does not happen within `ready_timeout_seconds`.
    """

    def __init__(
        self,
        config: RAGConfig | None = None,
        *,
        repository: KnowledgeVectorRepository | None = None,
        embedder: Embedder | None = None,
        pool: EmbeddingsPool | None = None,
    ) -> None:
        self.config = config or RAGConfig()
        self._repository = repository
        self._embedder_override = embedder
        self._embeddings = EmbeddingService(pool)
        self._search_engine: SimilaritySearchEngine | None = None
        self._ready = asyncio.Event()

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def embedding_service(self) -> EmbeddingService:
        return self._embeddings

    @property
    def search_engine(self) -> SimilaritySearchEngine:
        if self._search_engine is None:
            raise ConfigurationError("KnowledgeRAGService not initialized")
        return self._search_engine

    async def initialize(self) -> None:
        if self._ready.is_set():
            return

        self._embeddings.initialize(
            self.config.embedding,
            self.config.chunking,
            embedder=self._embedder_override,
        )
        if self._repository is None:
            self._repository = JsonKnowledgeVectorRepository(self.config.persistence.storage_path)
        self._search_engine = SimilaritySearchEngine(
            self._embeddings.embed_text,
            QueryEmbeddingCache(self.config.search.cache_size),
            embed_documents=self._embeddings.embed_texts,
        )
        self._ready.set()
        logger.info("Knowledge RAG service initialized")

    async def wait_until_ready(self, timeout: float | None = None) -> None:
        """Wait for `initialize()`; raise `ConfigurationError` after `timeout` seconds."""

        if self._ready.is_set():
            return
        limit = self.config.ready_timeout_seconds if timeout is None else timeout
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=limit)
        except asyncio.TimeoutError as exc:
            raise ConfigurationError(
                f"KnowledgeRAGService not initialized after {limit:.1f}s"
            ) from exc

    async def index_knowledge(
        self,
        knowledge_id: KnowledgeId,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> IndexResult:
        await self.wait_until_ready()
        logger.info("Indexing knowledge %s (%d chars)", knowledge_id, len(content))

        try:
            pieces = self._embeddings.chunk_text(content)
            embeddings = await self._embeddings.embed_texts(pieces)
            chunks = [
                EmbeddedChunk(
                    content=piece,
                    embedding=embedding,
                    metadata={
                        **(metadata or {}),
                        "knowledge_id": knowledge_id,
                        "chunk_index": index,
                        "id": f"knowledge_{knowledge_id}_chunk_{index}",
                    },
                )
                for index, (piece, embedding) in enumerate(zip(pieces, embeddings, strict=True))
            ]
            await asyncio.to_thread(self._repo.save, knowledge_id, chunks)
        except (RAGError, ValueError) as exc:
            logger.error("Failed to index knowledge %s: %s", knowledge_id, exc)
            return IndexResult(success=False, error=str(exc) or exc.__class__.__name__)

        chunk_ids = [chunk.metadata["id"] for chunk in chunks]
        logger.info("Indexed knowledge %s with %d chunks", knowledge_id, len(chunk_ids))
        return IndexResult(success=True, chunk_ids=chunk_ids)

    async def search_knowledge(
        self,
        query: str,
        knowledge_ids: list[KnowledgeId] | None = None,
        document_ids: list[KnowledgeId] | None = None,
        max_results: int | None = None,
        threshold: float | None = None,
    ) -> KnowledgeSearchResult:
        await self.wait_until_ready()

        if not knowledge_ids:
            logger.warning("No knowledge ids provided for search, returning empty results")
            return KnowledgeSearchResult(results=[])

        outcomes = await asyncio.gather(
            *(asyncio.to_thread(self._repo.load, knowledge_id) for knowledge_id in knowledge_ids),
            return_exceptions=True,
        )

        vector_sets: list[KnowledgeVectorSet] = []
        failed: list[KnowledgeId] = []
        for knowledge_id, outcome in zip(knowledge_ids, outcomes, strict=True):
            if isinstance(outcome, KnowledgeStoreError):
                logger.warning("Failed to load knowledge %s: %s", knowledge_id, outcome)
                failed.append(knowledge_id)
            elif isinstance(outcome, BaseException):
                raise outcome
            elif outcome is None:
                logger.warning("Knowledge %s has no stored vectors", knowledge_id)
            else:
                vector_sets.append(outcome)

        if not vector_sets:
            return KnowledgeSearchResult(results=[], failed_knowledge_ids=failed)

        response = await self.search_engine.search_similar(
            query,
            vector_sets,
            max_results=max_results or self.config.search.max_results,
            threshold=self.config.search.threshold if threshold is None else threshold,
            candidate_filter=document_id_filter(document_ids) if document_ids else None,
        )
        logger.info("Found %d relevant chunks for query %r", len(response.results), query)
        return KnowledgeSearchResult(
            results=response.results,
            failed_knowledge_ids=failed,
            search_time_ms=response.search_time_ms,
            total_candidates_scanned=response.total_candidates_scanned,
        )

    async def remove_knowledge(self, knowledge_id: KnowledgeId) -> bool:
        """Delete the stored set; a missing set also counts as removed."""

        await self.wait_until_ready()
        try:
            existed = await asyncio.to_thread(self._repo.delete, knowledge_id)
        except KnowledgeStoreError as exc:
            logger.error("Failed to remove knowledge %s: %s", knowledge_id, exc)
            return False
        if existed:
            logger.info("Removed knowledge %s", knowledge_id)
        else:
            logger.warning("No stored vectors for knowledge %s", knowledge_id)
        return True

    async def clear_all(self) -> bool:
        await self.wait_until_ready()
        try:
            removed = await asyncio.to_thread(self._repo.clear)
        except KnowledgeStoreError as exc:
            logger.error("Failed to clear knowledge vectors: %s", exc)
            return False
        logger.info("Cleared %d knowledge items", removed)
        return True

    async def get_stats(self) -> RAGStats:
        await self.wait_until_ready()
        knowledge_ids = await asyncio.to_thread(self._repo.list_ids)
        total_chunks = 0
        for knowledge_id in knowledge_ids:
            try:
                vector_set = await asyncio.to_thread(self._repo.load, knowledge_id)
            except KnowledgeStoreError as exc:
                logger.warning("Failed to read knowledge %s for stats: %s", knowledge_id, exc)
                continue
            if vector_set is not None:
                total_chunks += len(vector_set.chunks)
        return RAGStats(
            total_chunks=total_chunks,
            total_documents=len(knowledge_ids),
            knowledge_items=len(knowledge_ids),
        )

    async def get_query_embedding(self, query: str) -> list[float]:
        await self.wait_until_ready()
        return await self.search_engine.get_query_embedding(query)

    @property
    def _repo(self) -> KnowledgeVectorRepository:
        if self._repository is None:
            raise ConfigurationError("KnowledgeRAGService not initialized")
        return self._repository

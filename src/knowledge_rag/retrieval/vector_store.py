"""Document vector store interfaces and concrete adapters."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from langchain_core.documents import Document

from knowledge_rag.config import VectorStoreConfig
from knowledge_rag.ingest.chunker import RecursiveTextChunker
from knowledge_rag.ingest.embedder import Embedder
from knowledge_rag.retrieval.search import cosine_similarity, is_valid_embedding
from knowledge_rag.types import KnowledgeId, SearchCandidate

logger = logging.getLogger(__name__)

MetadataFilter = Callable[[dict[str, Any]], bool]

_MEMORY_FILE = "vectors.json"


class VectorStore(Protocol):
    """Document-level vector store contract."""

    async def init(self) -> None:
        """Prepare the store for use."""

    async def add_documents(self, documents: list[Document], ids: list[str]) -> list[str]:
        """Embed and insert documents under `ids`."""

    async def similarity_search_with_score(
        self,
        query: str,
        k: int,
        metadata_filter: MetadataFilter | None = None,
    ) -> list[tuple[Document, float]]:
        """Return up to `k` documents with cosine scores, best first."""

    async def save(self) -> None:
        """Persist the store when it has a persist path."""

    async def load(self) -> None:
        """Restore persisted contents when present."""

    async def delete_documents(self, ids: list[str]) -> None:
        """Remove documents by id."""

    def list_documents(self) -> list[Document]:
        """Return every stored document."""


@dataclass(slots=True)
class _StoredVector:
    document: Document
    embedding: list[float]


class InMemoryVectorStore:
    """Deterministic vector store used for tests and local prototyping."""

    def __init__(self, embedder: Embedder, persist_path: str | Path | None = None) -> None:
        self._embedder = embedder
        self._persist_path = Path(persist_path) if persist_path else None
        self._store: dict[str, _StoredVector] = {}

    async def init(self) -> None:
        self._store.clear()

    async def add_documents(self, documents: list[Document], ids: list[str]) -> list[str]:
        if len(documents) != len(ids):
            raise ValueError("documents and ids must have the same length")
        if not documents:
            return []
        embeddings = await self._embedder.embed_documents([doc.page_content for doc in documents])
        for doc_id, document, embedding in zip(ids, documents, embeddings, strict=True):
            self._store[doc_id] = _StoredVector(document=document, embedding=list(embedding))
        return list(ids)

    async def similarity_search_with_score(
        self,
        query: str,
        k: int,
        metadata_filter: MetadataFilter | None = None,
    ) -> list[tuple[Document, float]]:
        query_embedding = await self._embedder.embed_query(query)
        scored = [
            (record.document, cosine_similarity(query_embedding, record.embedding))
            for record in self._store.values()
            if is_valid_embedding(record.embedding)
            and (metadata_filter is None or metadata_filter(record.document.metadata))
        ]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:k]

    async def save(self) -> None:
        if self._persist_path is None:
            return
        self._persist_path.mkdir(parents=True, exist_ok=True)
        payload = [
            {
                "id": doc_id,
                "content": record.document.page_content,
                "metadata": record.document.metadata,
                "embedding": record.embedding,
            }
            for doc_id, record in self._store.items()
        ]
        (self._persist_path / _MEMORY_FILE).write_text(json.dumps(payload), encoding="utf-8")

    async def load(self) -> None:
        if self._persist_path is None:
            return
        path = self._persist_path / _MEMORY_FILE
        if not path.exists():
            return
        for item in json.loads(path.read_text(encoding="utf-8")):
            self._store[item["id"]] = _StoredVector(
                document=Document(page_content=item["content"], metadata=item.get("metadata") or {}),
                embedding=item["embedding"],
            )

    async def delete_documents(self, ids: list[str]) -> None:
        for doc_id in ids:
            self._store.pop(doc_id, None)

    def list_documents(self) -> list[Document]:
        return [record.document for record in self._store.values()]


class FaissVectorStore:
    """FAISS adapter via LangChain community integration.

    Embeddings are computed with our async `Embedder` and handed to FAISS
    precomputed. The index uses inner product over L2-normalized vectors,
    so scores are cosine similarities like `InMemoryVectorStore`.
    """

    def __init__(self, embedder: Embedder, persist_path: str | Path | None = None) -> None:
        try:
            from langchain_community.vectorstores import FAISS
            from langchain_community.vectorstores.utils import DistanceStrategy
            from langchain_core.embeddings import Embeddings
        except Exception as exc:  # pragma: no cover - import path is environment-dependent
            raise RuntimeError(
                "FAISS dependencies are not available. Install langchain-community/faiss-cpu."
            ) from exc

        class _EmbeddingAdapter(Embeddings):
            def __init__(self, adapter_embedder: Embedder) -> None:
                self._embedder = adapter_embedder

            # Sync entry points run the async embedder on a private loop, so they
            # must not be called from inside a running event loop.
            def embed_documents(self, texts: list[str]) -> list[list[float]]:
                return asyncio.run(self._embedder.embed_documents(texts))

            def embed_query(self, text: str) -> list[float]:
                return asyncio.run(self._embedder.embed_query(text))

            async def aembed_documents(self, texts: list[str]) -> list[list[float]]:
                return await self._embedder.embed_documents(texts)

            async def aembed_query(self, text: str) -> list[float]:
                return await self._embedder.embed_query(text)

        self._faiss_cls = FAISS
        self._index_kwargs = {
            "normalize_L2": True,
            "distance_strategy": DistanceStrategy.MAX_INNER_PRODUCT,
        }
        self._embedder = embedder
        self._embeddings = _EmbeddingAdapter(embedder)
        self._persist_path = Path(persist_path) if persist_path else None
        self._index: Any | None = None

    async def init(self) -> None:
        self._index = None

    async def add_documents(self, documents: list[Document], ids: list[str]) -> list[str]:
        if len(documents) != len(ids):
            raise ValueError("documents and ids must have the same length")
        if not documents:
            return []
        texts = [doc.page_content for doc in documents]
        embeddings = await self._embedder.embed_documents(texts)
        text_embeddings = list(zip(texts, embeddings, strict=True))
        metadatas = [dict(doc.metadata) for doc in documents]

        if self._index is None:
            self._index = self._faiss_cls.from_embeddings(
                text_embeddings=text_embeddings,
                embedding=self._embeddings,
                metadatas=metadatas,
                ids=ids,
                **self._index_kwargs,
            )
        else:
            self._index.add_embeddings(text_embeddings=text_embeddings, metadatas=metadatas, ids=ids)
        return list(ids)

    async def similarity_search_with_score(
        self,
        query: str,
        k: int,
        metadata_filter: MetadataFilter | None = None,
    ) -> list[tuple[Document, float]]:
        if self._index is None:
            return []
        query_embedding = await self._embedder.embed_query(query)
        docs_and_scores = self._index.similarity_search_with_score_by_vector(
            embedding=query_embedding,
            k=k,
            filter=metadata_filter,
            fetch_k=max(k, self._index.index.ntotal),
        )
        return [(doc, float(score)) for doc, score in docs_and_scores]

    async def save(self) -> None:
        if self._persist_path is None or self._index is None:
            return
        self._index.save_local(str(self._persist_path))

    async def load(self) -> None:
        if self._persist_path is None or not (self._persist_path / "index.faiss").exists():
            return
        self._index = self._faiss_cls.load_local(
            str(self._persist_path),
            self._embeddings,
            allow_dangerous_deserialization=True,
            **self._index_kwargs,
        )

    async def delete_documents(self, ids: list[str]) -> None:
        if self._index is None or not ids:
            return
        known = set(self._index.index_to_docstore_id.values())
        present = [doc_id for doc_id in ids if doc_id in known]
        if present:
            self._index.delete(present)

    def list_documents(self) -> list[Document]:
        if self._index is None:
            return []
        return [
            self._index.docstore.search(doc_id)
            for doc_id in self._index.index_to_docstore_id.values()
        ]


def create_vector_store(config: VectorStoreConfig, embedder: Embedder) -> VectorStore:
    if config.type == "faiss":
        return FaissVectorStore(embedder, config.persist_path)
    return InMemoryVectorStore(embedder, config.persist_path)


def _metadata_filter(
    knowledge_ids: list[KnowledgeId] | None,
    document_ids: list[KnowledgeId] | None,
) -> MetadataFilter | None:
    if not knowledge_ids and not document_ids:
        return None
    wanted_knowledge = {str(k) for k in knowledge_ids or []}
    wanted_documents = {str(d) for d in document_ids or []}

    def _matches(metadata: dict[str, Any]) -> bool:
        if wanted_knowledge and str(metadata.get("knowledge_id")) not in wanted_knowledge:
            return False
        if wanted_documents and str(metadata.get("document_id")) not in wanted_documents:
            return False
        return True

    return _matches


class VectorStoreService:
    """Chunks, indexes and searches documents in a configured vector store."""

    def __init__(
        self,
        config: VectorStoreConfig,
        embedder: Embedder,
        chunker: RecursiveTextChunker | None = None,
    ) -> None:
        self.config = config
        self._embedder = embedder
        self._chunker = chunker or RecursiveTextChunker()
        self._store: VectorStore | None = None

    @property
    def store(self) -> VectorStore:
        if self._store is None:
            raise RuntimeError("VectorStoreService.initialize() must be awaited first")
        return self._store

    async def initialize(self) -> None:
        self._store = create_vector_store(self.config, self._embedder)
        await self._store.init()
        if self.config.persist_path:
            await self._store.load()
        logger.info("Vector store initialized (type=%s)", self.config.type)

    async def index_document(
        self,
        document_id: KnowledgeId,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> list[str]:
        """Replace every chunk of `document_id` with chunks of `content`."""

        await self.delete_document(document_id)
        documents = self._chunker.create_chunks_with_metadata(
            content,
            {**(metadata or {}), "document_id": document_id},
        )
        ids = [doc.metadata["id"] for doc in documents]
        await self.store.add_documents(documents, ids)
        if self.config.auto_save:
            await self.store.save()
        logger.info("Indexed document %s with %d chunks", document_id, len(ids))
        return ids

    async def search_similar(
        self,
        query: str,
        *,
        max_results: int | None = None,
        threshold: float | None = None,
        knowledge_ids: list[KnowledgeId] | None = None,
        document_ids: list[KnowledgeId] | None = None,
    ) -> list[SearchCandidate]:
        k = max_results or self.config.max_results
        min_score = self.config.similarity_threshold if threshold is None else threshold
        hits = await self.store.similarity_search_with_score(
            query, k, _metadata_filter(knowledge_ids, document_ids)
        )
        return [
            SearchCandidate(
                content=doc.page_content,
                score=score,
                metadata=dict(doc.metadata),
                knowledge_id=doc.metadata.get("knowledge_id", doc.metadata.get("document_id", "")),
                chunk_id=str(doc.metadata.get("id", "")),
            )
            for doc, score in hits
            if score >= min_score
        ]

    async def delete_document(self, document_id: KnowledgeId) -> int:
        ids = [
            doc.metadata["id"]
            for doc in self.get_documents({"document_id": document_id})
            if "id" in doc.metadata
        ]
        await self.store.delete_documents(ids)
        if ids and self.config.auto_save:
            await self.store.save()
        return len(ids)

    def get_documents(self, metadata_filter: dict[str, Any] | None = None) -> list[Document]:
        documents = self.store.list_documents()
        if not metadata_filter:
            return documents
        return [
            doc
            for doc in documents
            if all(str(doc.metadata.get(key)) == str(value) for key, value in metadata_filter.items())
        ]

    def get_stats(self) -> dict[str, int]:
        documents = self.store.list_documents()
        document_ids = {str(doc.metadata.get("document_id")) for doc in documents}
        return {"total_chunks": len(documents), "total_documents": len(document_ids)}

    async def clear(self) -> None:
        await self.store.init()
        if self.config.auto_save:
            await self.store.save()

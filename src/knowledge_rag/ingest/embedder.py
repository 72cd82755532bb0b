"""Embedding abstractions, provider adapters and the embedding service."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from hashlib import blake2b
from math import sqrt
from typing import Any

from langchain_core.documents import Document
from langchain_core.embeddings import Embeddings

from knowledge_rag.config import ChunkingConfig, EmbeddingConfig
from knowledge_rag.errors import ConfigurationError, ProviderError, to_provider_error
from knowledge_rag.execution.batch_executor import RateLimitedBatchExecutor
from knowledge_rag.ingest.chunker import RecursiveTextChunker
from knowledge_rag.retrieval.search import cosine_similarity
from knowledge_rag.types import EmbeddedChunk

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "openai": "text-embedding-3-large",
    "cohere": "embed-v4.0",
}


class Embedder(ABC):
    """Embedder interface used by ingest and retrieval components."""

    @abstractmethod
    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many documents."""

    @abstractmethod
    async def embed_query(self, text: str) -> list[float]:
        """Embed one query."""


class HashingEmbedder(Embedder):
    """Deterministic sparse-like embedding without external model calls.

    Used for local runs and tests. Equal texts always map to equal unit
    vectors, so a text searched against itself scores 1.0.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    async def embed_query(self, text: str) -> list[float]:
        return self._embed(text)

    def _embed(self, text: str) -> list[float]:
        vector = [0.0 for _ in range(self.dimension)]
        tokens = text.lower().split()
        if not tokens:
            return vector

        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = -1.0 if digest[4] % 2 else 1.0
            vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


class LangChainEmbedder(Embedder):
    """Adapts a LangChain `Embeddings` model, classifying its SDK errors."""

    def __init__(self, embeddings: Embeddings) -> None:
        self._embeddings = embeddings

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        try:
            return await self._embeddings.aembed_documents(texts)
        except ProviderError:
            raise
        except Exception as exc:
            raise to_provider_error(exc) from exc

    async def embed_query(self, text: str) -> list[float]:
        try:
            return await self._embeddings.aembed_query(text)
        except ProviderError:
            raise
        except Exception as exc:
            raise to_provider_error(exc) from exc


class RateLimitedEmbedder(Embedder):
    """Routes document batches through a `RateLimitedBatchExecutor`."""

    def __init__(self, inner: Embedder, executor: RateLimitedBatchExecutor) -> None:
        self._inner = inner
        self.executor = executor

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        result = await self.executor.execute_with_rate_limit(
            texts,
            self._inner.embed_documents,
            token_extractor=lambda text: text,
        )
        return result.unwrap()

    async def embed_query(self, text: str) -> list[float]:
        return await self.executor.call_with_retry(lambda: self._inner.embed_query(text))


class EmbeddingsPool:
    """Reuses provider embedding clients keyed by provider, model and key suffix."""

    def __init__(self) -> None:
        self._clients: dict[str, Embeddings] = {}

    @staticmethod
    def key(provider: str, model: str, api_key: str | None) -> str:
        return f"{provider}_{model}_{(api_key or '')[-8:]}"

    def get_or_create(self, key: str, factory: Callable[[], Embeddings]) -> Embeddings:
        client = self._clients.get(key)
        if client is None:
            logger.debug("Creating embeddings client %s", key)
            client = factory()
            self._clients[key] = client
        return client

    def clear(self) -> None:
        self._clients.clear()

    def __len__(self) -> int:
        return len(self._clients)


def _create_langchain_embeddings(
    provider: str,
    model: str,
    api_key: str,
    batch_size: int,
) -> Embeddings:
    if provider == "openai":
        from langchain_openai import OpenAIEmbeddings

        return OpenAIEmbeddings(model=model, api_key=api_key, chunk_size=batch_size)

    from langchain_cohere import CohereEmbeddings

    return CohereEmbeddings(model=model, cohere_api_key=api_key)


def build_embedder(config: EmbeddingConfig, pool: EmbeddingsPool | None = None) -> Embedder:
    """Create the embedder described by `config`.

    Remote providers require an API key; their clients are shared through
    `pool`. When `config.rate_limiting` is set, document batches go through a
    rate-limited executor whose tokenizer matches the model.
    """

    pool = pool if pool is not None else EmbeddingsPool()

    if config.provider == "hashing":
        inner: Embedder = HashingEmbedder(config.dimension)
        model = None
    else:
        if not config.api_key:
            raise ConfigurationError(f"An API key is required for the {config.provider} provider")
        model = config.model or DEFAULT_MODELS[config.provider]
        api_key = config.api_key
        client = pool.get_or_create(
            pool.key(config.provider, model, api_key),
            lambda: _create_langchain_embeddings(config.provider, model, api_key, config.batch_size),
        )
        inner = LangChainEmbedder(client)

    if config.rate_limiting is None:
        return inner

    executor = RateLimitedBatchExecutor(config.rate_limiting)
    if model is not None:
        executor.initialize(model)
    return RateLimitedEmbedder(inner, executor)


class EmbeddingService:
    """Embeds and chunks text with a configured provider.

    Every operation except `cosine_similarity` raises `ConfigurationError`
    until `initialize` has been called.
    """

    def __init__(self, pool: EmbeddingsPool | None = None) -> None:
        self._pool = pool if pool is not None else EmbeddingsPool()
        self._embedder: Embedder | None = None
        self._chunker: RecursiveTextChunker | None = None

    def initialize(
        self,
        config: EmbeddingConfig,
        chunk_config: ChunkingConfig | None = None,
        *,
        embedder: Embedder | None = None,
    ) -> None:
        self._embedder = embedder if embedder is not None else build_embedder(config, self._pool)
        self._chunker = RecursiveTextChunker(chunk_config)
        logger.info("Embedding service initialized with provider %s", config.provider)

    @property
    def is_initialized(self) -> bool:
        return self._embedder is not None

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            raise ConfigurationError("Embedding service not initialized")
        return self._embedder

    @property
    def chunker(self) -> RecursiveTextChunker:
        if self._chunker is None:
            raise ConfigurationError("Embedding service not initialized")
        return self._chunker

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        embedder = self.embedder
        if not texts:
            return []
        return await embedder.embed_documents(texts)

    async def embed_text(self, text: str) -> list[float]:
        return await self.embedder.embed_query(text)

    def chunk_text(
        self,
        text: str,
        chunk_size: int | None = None,
        overlap: int | None = None,
    ) -> list[str]:
        return self.chunker.chunk_text(text, max_tokens=chunk_size, overlap=overlap)

    async def chunk_and_embed(
        self,
        text: str,
        metadata: dict[str, Any] | None = None,
    ) -> list[EmbeddedChunk]:
        """Chunk `text` and embed every chunk in one batched call."""

        pieces = self.chunk_text(text)
        vectors = await self.embed_texts(pieces)
        base = metadata or {}
        return [
            EmbeddedChunk(
                content=piece,
                embedding=vector,
                metadata={**base, "chunk_index": index, "total_chunks": len(pieces)},
            )
            for index, (piece, vector) in enumerate(zip(pieces, vectors, strict=True))
        ]

    def create_documents(
        self,
        texts: list[str],
        metadatas: list[dict[str, Any]] | None = None,
    ) -> list[Document]:
        if not self.is_initialized:
            raise ConfigurationError("Embedding service not initialized")
        if metadatas is not None and len(metadatas) != len(texts):
            raise ValueError("texts and metadatas must have the same length")
        return [
            Document(page_content=text, metadata=dict(metadatas[i]) if metadatas else {})
            for i, text in enumerate(texts)
        ]

    @staticmethod
    def cosine_similarity(a: list[float], b: list[float]) -> float:
        return cosine_similarity(a, b)

"""Configuration models for the knowledge RAG system."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

DEFAULT_SEPARATORS: tuple[str, ...] = (
    "\n\n",
    "\n",
    ". ",
    "! ",
    "? ",
    "; ",
    ", ",
    " ",
    "",
)


class ChunkingConfig(BaseModel):
    """Configures recursive separator-based chunking.

    `overlap_chars` is a character count, not a token count.
    """

    max_tokens: int = Field(default=450, ge=1)
    overlap_chars: int = Field(default=50, ge=0)
    separators: tuple[str, ...] = DEFAULT_SEPARATORS


class RateLimitConfig(BaseModel):
    """Provider throughput limits and retry policy for batch execution."""

    requests_per_minute: int = Field(default=500, ge=1)
    tokens_per_minute: int = Field(default=300_000, ge=1)
    concurrency: int = Field(default=4, ge=1)
    max_retries: int = Field(default=6, ge=0)
    base_backoff_ms: int = Field(default=500, ge=0)
    safety_factor: float = Field(default=0.75, gt=0.0, le=1.0)


class EmbeddingConfig(BaseModel):
    """Selects and configures the embedding provider."""

    provider: Literal["openai", "cohere", "hashing"] = "hashing"
    api_key: str | None = None
    model: str | None = None
    batch_size: int = Field(default=96, ge=1)
    dimension: int = Field(default=256, ge=1)
    rate_limiting: RateLimitConfig | None = None


class SearchConfig(BaseModel):
    """Defaults for similarity search over knowledge vector sets."""

    max_results: int = Field(default=5, ge=1)
    threshold: float = Field(default=0.1, ge=-1.0, le=1.0)
    cache_size: int = Field(default=100, ge=1)


class VectorStoreConfig(BaseModel):
    """Configures the document-level vector store variant."""

    type: Literal["memory", "faiss"] = "memory"
    max_results: int = Field(default=10, ge=1)
    similarity_threshold: float = Field(default=0.1, ge=-1.0, le=1.0)
    persist_path: str | None = None
    auto_save: bool = False


class PersistenceConfig(BaseModel):
    """Where per-knowledge vector files are written."""

    storage_path: str = "files/vectors/knowledge"


class RAGConfig(BaseModel):
    """Top-level configuration consumed by `KnowledgeRAGService`."""

    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    vector_store: VectorStoreConfig = Field(default_factory=VectorStoreConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    ready_timeout_seconds: float = Field(default=3.0, gt=0.0)

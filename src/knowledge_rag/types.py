"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from knowledge_rag.errors import PartialBatchFailureError

KnowledgeId = str | int

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True, slots=True)
class Chunk:
    """A bounded slice of source text produced for downstream embedding."""

    content: str
    index: int
    total_chunks: int
    source_metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class EmbeddedChunk:
    """A chunk together with its embedding vector."""

    content: str
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "embedding": self.embedding,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EmbeddedChunk":
        return cls(
            content=data.get("content", ""),
            embedding=data.get("embedding"),  # type: ignore[arg-type]
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(slots=True)
class KnowledgeVectorSet:
    """All embedded chunks indexed under one knowledge id."""

    knowledge_id: KnowledgeId
    chunks: list[EmbeddedChunk]


@dataclass(slots=True)
class BatchSlice(Generic[T]):
    """A contiguous batch of input items and its offset in the input."""

    start: int
    items: list[T]


@dataclass(slots=True)
class BatchFailure:
    """Item range whose batch failed terminally."""

    start: int
    size: int
    error: BaseException


@dataclass(slots=True)
class BatchExecutionResult(Generic[R]):
    """Results in input order; slots of failed ranges are left as `None`."""

    results: list[R | None]
    partial_failures: list[BatchFailure] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.partial_failures

    def unwrap(self) -> list[R]:
        """Return the results, raising if any batch range failed."""
        if self.partial_failures:
            raise PartialBatchFailureError(self.partial_failures)
        return list(self.results)  # type: ignore[arg-type]


@dataclass(slots=True)
class SearchCandidate:
    """A scored chunk produced for one query."""

    content: str
    score: float
    metadata: dict[str, Any]
    knowledge_id: KnowledgeId
    chunk_id: str


@dataclass(slots=True)
class SearchResponse:
    """Ranked candidates plus scan diagnostics."""

    results: list[SearchCandidate]
    search_time_ms: float
    total_candidates_scanned: int


@dataclass(slots=True)
class IndexResult:
    """Outcome of indexing one knowledge item."""

    success: bool
    chunk_ids: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class KnowledgeSearchResult:
    """Outcome of a multi-knowledge search, including load failures."""

    results: list[SearchCandidate]
    failed_knowledge_ids: list[KnowledgeId] = field(default_factory=list)
    search_time_ms: float = 0.0
    total_candidates_scanned: int = 0


@dataclass(slots=True)
class RAGStats:
    """Aggregate counts over persisted knowledge vector sets."""

    total_chunks: int
    total_documents: int
    knowledge_items: int

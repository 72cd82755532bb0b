"""FastAPI entrypoint for knowledge indexing and search endpoints."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from knowledge_rag.config import EmbeddingConfig, PersistenceConfig, RAGConfig
from knowledge_rag.errors import (
    ConfigurationError,
    DimensionMismatchError,
    InvalidEmbeddingError,
    ProviderError,
    RAGError,
)
from knowledge_rag.obs.logging import setup_logging
from knowledge_rag.service import KnowledgeRAGService

logger = logging.getLogger(__name__)


def _load_config() -> RAGConfig:
    provider = os.getenv("RAG_EMBEDDING_PROVIDER", "hashing")
    api_key = {
        "openai": os.getenv("OPENAI_API_KEY"),
        "cohere": os.getenv("COHERE_API_KEY"),
    }.get(provider)
    return RAGConfig(
        embedding=EmbeddingConfig(
            provider=provider,
            api_key=api_key,
            model=os.getenv("RAG_EMBEDDING_MODEL") or None,
        ),
        persistence=PersistenceConfig(
            storage_path=os.getenv("RAG_STORAGE_PATH", "files/vectors/knowledge"),
        ),
    )


class IndexRequest(BaseModel):
    knowledge_id: int | str
    content: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    knowledge_ids: list[int | str] = Field(default_factory=list)
    document_ids: list[int | str] | None = None
    max_results: int = Field(default=5, ge=1, le=50)
    threshold: float = Field(default=0.1, ge=-1.0, le=1.0)


_service: KnowledgeRAGService | None = None


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    global _service
    setup_logging(os.getenv("RAG_LOG_LEVEL", "INFO"))
    _service = KnowledgeRAGService(_load_config())
    await _service.initialize()
    yield
    _service = None


app = FastAPI(title="Knowledge RAG Service", version="0.1.0", lifespan=lifespan)


def _get_service() -> KnowledgeRAGService:
    if _service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _service


def _http_error(exc: RAGError) -> HTTPException:
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, ProviderError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, (DimensionMismatchError, InvalidEmbeddingError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@app.get("/health")
def health() -> dict[str, Any]:
    service = _service
    return {
        "status": "ok",
        "ready": service is not None and service.is_ready,
        "embedding_provider": service.config.embedding.provider if service else None,
    }


@app.post("/knowledge")
async def index_knowledge(request: IndexRequest) -> dict[str, Any]:
    service = _get_service()
    result = await service.index_knowledge(request.knowledge_id, request.content, request.metadata)
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)
    return {
        "knowledge_id": request.knowledge_id,
        "chunks_created": len(result.chunk_ids),
        "chunk_ids": result.chunk_ids,
    }


@app.delete("/knowledge/{knowledge_id}")
async def remove_knowledge(knowledge_id: str) -> dict[str, Any]:
    service = _get_service()
    if not await service.remove_knowledge(knowledge_id):
        raise HTTPException(status_code=500, detail=f"Failed to remove knowledge {knowledge_id}")
    return {"knowledge_id": knowledge_id, "removed": True}


@app.delete("/knowledge")
async def clear_knowledge() -> dict[str, Any]:
    service = _get_service()
    if not await service.clear_all():
        raise HTTPException(status_code=500, detail="Failed to clear knowledge")
    return {"cleared": True}


@app.post("/search")
async def search(request: SearchRequest) -> dict[str, Any]:
    service = _get_service()
    try:
        result = await service.search_knowledge(
            request.query,
            knowledge_ids=request.knowledge_ids,
            document_ids=request.document_ids,
            max_results=request.max_results,
            threshold=request.threshold,
        )
    except RAGError as exc:
        raise _http_error(exc) from exc

    return {
        "items": [asdict(candidate) for candidate in result.results],
        "failed_knowledge_ids": result.failed_knowledge_ids,
        "search_time_ms": result.search_time_ms,
        "total_candidates_scanned": result.total_candidates_scanned,
    }


@app.get("/stats")
async def stats() -> dict[str, Any]:
    return asdict(await _get_service().get_stats())

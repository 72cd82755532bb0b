"""Knowledge RAG package."""

from .config import ChunkingConfig, RAGConfig, RateLimitConfig
from .service import KnowledgeRAGService

__all__ = ["ChunkingConfig", "KnowledgeRAGService", "RAGConfig", "RateLimitConfig"]

import asyncio

import pytest

from knowledge_rag.config import ChunkingConfig, VectorStoreConfig
from knowledge_rag.ingest.chunker import RecursiveTextChunker
from knowledge_rag.ingest.embedder import HashingEmbedder
from knowledge_rag.retrieval.vector_store import (
    FaissVectorStore,
    InMemoryVectorStore,
    VectorStoreService,
    create_vector_store,
)

POLICY = "Employees must encrypt customer data at rest and in transit."
TRAVEL = "Travel expenses above five hundred dollars need manager approval."


async def _service(config: VectorStoreConfig | None = None) -> VectorStoreService:
    service = VectorStoreService(
        config or VectorStoreConfig(),
        HashingEmbedder(),
        RecursiveTextChunker(ChunkingConfig(max_tokens=450, overlap_chars=50)),
    )
    await service.initialize()
    return service


def test_create_vector_store_selects_variant() -> None:
    assert isinstance(create_vector_store(VectorStoreConfig(), HashingEmbedder()), InMemoryVectorStore)


@pytest.mark.asyncio
async def test_index_and_search_documents() -> None:
    service = await _service()
    await service.index_document("policy", POLICY, {"knowledge_id": 1})
    await service.index_document("travel", TRAVEL, {"knowledge_id": 2})

    hits = await service.search_similar(POLICY)

    assert hits[0].content == POLICY
    assert hits[0].score == pytest.approx(1.0)
    assert hits[0].chunk_id == "policy_chunk_0"
    assert hits[0].knowledge_id == 1
    assert all(hit.score >= 0.1 for hit in hits)


@pytest.mark.asyncio
async def test_search_filters_by_knowledge_and_document() -> None:
    service = await _service()
    await service.index_document("policy", POLICY, {"knowledge_id": 1})
    await service.index_document("travel", TRAVEL, {"knowledge_id": 2})

    by_document = await service.search_similar(POLICY, document_ids=["travel"], threshold=-1.0)
    by_knowledge = await service.search_similar(POLICY, knowledge_ids=[2], threshold=-1.0)

    assert [hit.content for hit in by_document] == [TRAVEL]
    assert [hit.content for hit in by_knowledge] == [TRAVEL]


@pytest.mark.asyncio
async def test_reindex_replaces_and_delete_removes() -> None:
    service = await _service()
    await service.index_document("policy", POLICY)
    await service.index_document("policy", TRAVEL)

    documents = service.get_documents({"document_id": "policy"})

    assert [doc.page_content for doc in documents] == [TRAVEL]
    assert service.get_stats() == {"total_chunks": 1, "total_documents": 1}
    assert await service.delete_document("policy") == 1
    assert service.get_stats() == {"total_chunks": 0, "total_documents": 0}


@pytest.mark.asyncio
async def test_clear_empties_store() -> None:
    service = await _service()
    await service.index_document("policy", POLICY)

    await service.clear()

    assert service.get_documents() == []


@pytest.mark.asyncio
async def test_memory_store_persists_with_auto_save(tmp_path) -> None:
    config = VectorStoreConfig(persist_path=str(tmp_path), auto_save=True)
    service = await _service(config)
    await service.index_document("policy", POLICY)

    restored = await _service(config)

    assert [doc.page_content for doc in restored.get_documents()] == [POLICY]


@pytest.mark.asyncio
async def test_faiss_store_scores_match_cosine(tmp_path) -> None:
    pytest.importorskip("faiss")
    pytest.importorskip("langchain_community")

    store = FaissVectorStore(HashingEmbedder(), tmp_path)
    config = VectorStoreConfig(type="faiss", persist_path=str(tmp_path), auto_save=True)
    service = VectorStoreService(config, HashingEmbedder())
    service._store = store
    await store.init()

    await service.index_document("policy", POLICY, {"knowledge_id": 1})
    await service.index_document("travel", TRAVEL, {"knowledge_id": 2})
    hits = await service.search_similar(POLICY, document_ids=["policy"])

    assert [hit.content for hit in hits] == [POLICY]
    assert hits[0].score == pytest.approx(1.0, abs=1e-5)

    await service.delete_document("travel")
    restored = FaissVectorStore(HashingEmbedder(), tmp_path)
    await restored.load()
    assert [doc.page_content for doc in restored.list_documents()] == [POLICY]


def test_faiss_embeddings_support_sync_calls(tmp_path) -> None:
    pytest.importorskip("faiss")
    pytest.importorskip("langchain_community")

    embedder = HashingEmbedder()
    store = FaissVectorStore(embedder, tmp_path)

    assert store._embeddings.embed_query(POLICY) == asyncio.run(embedder.embed_query(POLICY))
    assert store._embeddings.embed_documents([POLICY, TRAVEL]) == asyncio.run(
        embedder.embed_documents([POLICY, TRAVEL])
    )

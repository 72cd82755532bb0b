import pytest

from knowledge_rag.config import ChunkingConfig
from knowledge_rag.ingest.chunker import (
    RecursiveTextChunker,
    estimate_tokens,
    truncate_text,
)

SENTENCE = "Data governance requires strict access control and encryption. "


def _make_text(length: int = 2000) -> str:
    repeated = SENTENCE * (length // len(SENTENCE) + 1)
    return repeated[:length]


def test_empty_and_whitespace_text_yield_no_chunks() -> None:
    chunker = RecursiveTextChunker()

    assert chunker.chunk_text("") == []
    assert chunker.chunk_text("   \n\n\t  ") == []


def test_short_text_is_returned_trimmed() -> None:
    chunker = RecursiveTextChunker()

    assert chunker.chunk_text("  Encryption at rest is mandatory.  ") == [
        "Encryption at rest is mandatory."
    ]


def test_chunks_respect_token_budget_with_overlap() -> None:
    chunker = RecursiveTextChunker()

    chunks = chunker.chunk_text(_make_text(), max_tokens=100, overlap=20)

    assert len(chunks) >= 2
    assert all(estimate_tokens(chunk) <= 100 for chunk in chunks)


def test_chunks_without_overlap_reconstruct_normalized_text() -> None:
    chunker = RecursiveTextChunker()
    text = _make_text()

    chunks = chunker.chunk_text(text, max_tokens=100, overlap=0)

    assert " ".join(chunks) == " ".join(text.split())


def test_overlap_prefix_is_tail_of_previous_chunk() -> None:
    chunker = RecursiveTextChunker()
    text = _make_text()

    plain = chunker.chunk_text(text, max_tokens=100, overlap=0)
    overlapped = chunker.chunk_text(text, max_tokens=100, overlap=20)

    assert len(plain) == len(overlapped)
    assert overlapped[0] == plain[0]
    for i in range(1, len(plain)):
        assert overlapped[i].endswith(plain[i])
        prefix = overlapped[i][: len(overlapped[i]) - len(plain[i])].strip()
        assert len(prefix) <= 20
        assert plain[i - 1].endswith(prefix)


def test_text_without_separators_is_force_split() -> None:
    chunker = RecursiveTextChunker()
    text = "a" * 1000

    chunks = chunker.chunk_text(text, max_tokens=10, overlap=0)

    assert all(len(chunk) <= 35 for chunk in chunks)
    assert "".join(chunks) == text


def test_overlap_larger_than_budget_terminates() -> None:
    chunker = RecursiveTextChunker()

    chunks = chunker.chunk_text("abcdefghijklmnopqrstuvwxyz", max_tokens=1, overlap=50)

    assert chunks
    assert all(chunk.strip() == chunk for chunk in chunks)


def test_punctuation_separators_are_kept() -> None:
    chunker = RecursiveTextChunker()
    text = "First clause, second clause; third clause! " * 40

    chunks = chunker.chunk_text(text, max_tokens=10, overlap=0)

    assert " ".join(chunks) == " ".join(text.split())


def test_chunking_is_deterministic() -> None:
    chunker = RecursiveTextChunker(ChunkingConfig(max_tokens=60, overlap_chars=15))
    text = _make_text(1500) + "\n\n" + _make_text(900)

    assert chunker.chunk_text(text) == chunker.chunk_text(text)


def test_invalid_max_tokens_is_rejected() -> None:
    with pytest.raises(ValueError):
        RecursiveTextChunker().chunk_text("text", max_tokens=0)


def test_chunk_records_carry_position_and_metadata() -> None:
    chunker = RecursiveTextChunker(ChunkingConfig(max_tokens=100, overlap_chars=20))

    chunks = chunker.chunk(_make_text(), {"source": "unit"})

    assert [chunk.index for chunk in chunks] == list(range(len(chunks)))
    assert all(chunk.total_chunks == len(chunks) for chunk in chunks)
    assert all(chunk.source_metadata == {"source": "unit"} for chunk in chunks)


def test_create_chunks_with_metadata_assigns_ids() -> None:
    chunker = RecursiveTextChunker()

    docs = chunker.create_chunks_with_metadata(
        _make_text(), {"document_id": "policy", "source": "unit"}, max_tokens=100, overlap=20
    )
    anonymous = chunker.create_chunks_with_metadata("Short text.")

    assert docs[0].metadata["id"] == "policy_chunk_0"
    assert docs[-1].metadata["chunk_index"] == len(docs) - 1
    assert all(doc.metadata["total_chunks"] == len(docs) for doc in docs)
    assert all(doc.metadata["source"] == "unit" for doc in docs)
    assert anonymous[0].metadata["id"] == "doc_chunk_0"


def test_truncate_text_prefers_word_boundary() -> None:
    text = "word " * 100

    truncated = truncate_text(text, max_tokens=10)

    assert len(truncated) <= 35
    assert not truncated.endswith(" ")
    assert set(truncated.split()) == {"word"}
    assert truncate_text("short", max_tokens=10) == "short"

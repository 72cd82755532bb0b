"""Recursive separator-hierarchy text chunking with overlap reconstruction."""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from typing import Any

from langchain_core.documents import Document

from knowledge_rag.config import DEFAULT_SEPARATORS, ChunkingConfig
from knowledge_rag.types import Chunk

logger = logging.getLogger(__name__)

# Average characters per token used for estimates.
CHARS_PER_TOKEN_ESTIMATE = 3.7
# Conservative ratio used to turn a token budget into a character budget.
CHARS_PER_TOKEN_BUDGET = 3.5


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN_ESTIMATE)


def truncate_text(text: str, max_tokens: int) -> str:
    """Cut `text` to the character budget of `max_tokens`, preferring a word break."""

    max_chars = math.floor(max_tokens * CHARS_PER_TOKEN_BUDGET)
    if len(text) <= max_chars:
        return text

    position = max_chars
    while position > max_chars * 0.8 and text[position] != " ":
        position -= 1
    if position <= max_chars * 0.8:
        position = max_chars
    return text[:position].strip()


class RecursiveTextChunker:
    """Splits text into token-bounded chunks along a separator hierarchy.

    Algorithm:
    1. Texts already within `max_tokens` (estimated) are returned whole.
    2. Otherwise the token budget becomes a character budget
       (`floor(max_tokens * 3.5)`) and the text is split by the most preferred
       separator. Fragments that still exceed the budget are split again with
       the next separators; when none remain, they are cut into fixed windows
       that step back by `overlap` characters.
    3. Finished pieces are greedily re-merged with a single space as long as
       the merged text fits the budget.
    4. Each chunk after the first is prefixed with the tail of the previous
       chunk, cut at a word boundary, so neighbouring chunks share context.

    The procedure has no randomness: equal inputs give identical chunks.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()

    def chunk_text(
        self,
        text: str,
        max_tokens: int | None = None,
        overlap: int | None = None,
        separators: Sequence[str] | None = None,
    ) -> list[str]:
        """Split `text` into ordered chunk strings.

        Args:
            text: Raw text, possibly empty.
            max_tokens: Estimated-token budget per chunk.
            overlap: Characters of trailing context carried into the next chunk.
            separators: Break strings, most preferred first, ending in `""`.
        """

        max_tokens = self.config.max_tokens if max_tokens is None else max_tokens
        overlap = self.config.overlap_chars if overlap is None else overlap
        separators = list(self.config.separators if separators is None else separators)
        if max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        overlap = max(0, overlap)

        if not text or not text.strip():
            return []

        estimated = estimate_tokens(text)
        if estimated <= max_tokens:
            return [text.strip()]

        logger.debug(
            "Chunking text: %d chars, estimated %d tokens, max %d tokens per chunk",
            len(text),
            estimated,
            max_tokens,
        )

        max_chars = math.floor(max_tokens * CHARS_PER_TOKEN_BUDGET)
        merged = self._recursive_split(text, max_chars, overlap, separators)
        return self._add_overlaps(merged, overlap)

    def chunk(
        self,
        text: str,
        source_metadata: dict[str, Any] | None = None,
    ) -> list[Chunk]:
        """Chunk `text` into `Chunk` records carrying the source metadata."""

        pieces = self.chunk_text(text)
        metadata = dict(source_metadata or {})
        return [
            Chunk(
                content=piece,
                index=index,
                total_chunks=len(pieces),
                source_metadata=dict(metadata),
            )
            for index, piece in enumerate(pieces)
        ]

    def create_chunks_with_metadata(
        self,
        text: str,
        metadata: dict[str, Any] | None = None,
        max_tokens: int | None = None,
        overlap: int | None = None,
    ) -> list[Document]:
        """Chunk `text` into LangChain documents with chunk bookkeeping metadata."""

        metadata = metadata or {}
        pieces = self.chunk_text(text, max_tokens=max_tokens, overlap=overlap)
        document_id = metadata.get("document_id") or "doc"
        return [
            Document(
                page_content=piece,
                metadata={
                    **metadata,
                    "chunk_index": index,
                    "total_chunks": len(pieces),
                    "id": f"{document_id}_chunk_{index}",
                },
            )
            for index, piece in enumerate(pieces)
        ]

    def _recursive_split(
        self,
        text: str,
        max_chars: int,
        overlap: int,
        separators: list[str],
    ) -> list[str]:
        if not separators or separators[0] == "":
            return self._merge(self._force_split(text, max_chars, overlap), max_chars)

        separator = separators[0]
        remaining = separators[1:]
        pieces: list[str] = []

        for fragment in self._split_by_separator(text, separator):
            if len(fragment) <= max_chars:
                pieces.append(fragment)
            elif remaining:
                pieces.extend(self._recursive_split(fragment, max_chars, overlap, remaining))
            else:
                pieces.extend(self._force_split(fragment, max_chars, overlap))

        return self._merge(pieces, max_chars)

    @staticmethod
    def _split_by_separator(text: str, separator: str) -> list[str]:
        if separator not in text:
            stripped = text.strip()
            return [stripped] if stripped else []

        # Punctuation separators stay with the left fragment; whitespace ones are dropped.
        keep = separator if separator.strip() else ""
        parts = text.split(separator)
        fragments: list[str] = []
        for i, part in enumerate(parts):
            piece = part if i == len(parts) - 1 else part + keep
            piece = piece.strip()
            if piece:
                fragments.append(piece)
        return fragments

    @staticmethod
    def _force_split(text: str, max_chars: int, overlap: int) -> list[str]:
        max_chars = max(1, max_chars)
        step = max(1, max_chars - overlap)
        windows: list[str] = []
        position = 0

        while position < len(text):
            end = position + max_chars
            if end >= len(text):
                tail = text[position:].strip()
                if tail:
                    windows.append(tail)
                break
            window = text[position:end].strip()
            if window:
                windows.append(window)
            position += step

        return windows

    @staticmethod
    def _merge(pieces: list[str], max_chars: int) -> list[str]:
        merged: list[str] = []
        current = ""

        for piece in pieces:
            combined = f"{current} {piece}" if current else piece
            if len(combined) <= max_chars:
                current = combined
                continue
            if current:
                merged.append(current.strip())
            current = piece

        if current.strip():
            merged.append(current.strip())
        return merged

    def _add_overlaps(self, chunks: list[str], overlap: int) -> list[str]:
        if len(chunks) <= 1 or overlap <= 0:
            return chunks

        output: list[str] = [chunks[0]]
        for previous, chunk in zip(chunks, chunks[1:]):
            prefix = self._extract_overlap(previous, overlap)
            if prefix and not chunk.startswith(prefix):
                chunk = f"{prefix} {chunk}"
            output.append(chunk.strip())
        return output

    @staticmethod
    def _extract_overlap(text: str, overlap: int) -> str:
        if len(text) <= overlap:
            return text

        start = len(text) - overlap
        while start < len(text) and text[start] != " ":
            start += 1
        if start >= len(text):
            # No word boundary inside the tail.
            return text[len(text) - overlap :]
        return text[start + 1 :]

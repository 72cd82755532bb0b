"""Per-knowledge persistence of embedded chunk sets."""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from knowledge_rag.errors import KnowledgeStoreError
from knowledge_rag.types import EmbeddedChunk, KnowledgeId, KnowledgeVectorSet

logger = logging.getLogger(__name__)

_FILE_PREFIX = "knowledge_"
_FILE_SUFFIX = ".json"
_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class KnowledgeVectorRepository(Protocol):
    """Stores one `KnowledgeVectorSet` per knowledge id, written wholesale."""

    def load(self, knowledge_id: KnowledgeId) -> KnowledgeVectorSet | None:
        """Return the stored set, or `None` when nothing is stored."""

    def save(self, knowledge_id: KnowledgeId, chunks: list[EmbeddedChunk]) -> None:
        """Create or overwrite the set for `knowledge_id`."""

    def delete(self, knowledge_id: KnowledgeId) -> bool:
        """Remove the set; return whether one existed."""

    def list_ids(self) -> list[str]:
        """Return the ids of every stored set."""

    def clear(self) -> int:
        """Remove every set and return how many were removed."""


class InMemoryKnowledgeVectorRepository:
    """Process-local repository used for tests and ephemeral runs."""

    def __init__(self) -> None:
        self._sets: dict[str, KnowledgeVectorSet] = {}

    def load(self, knowledge_id: KnowledgeId) -> KnowledgeVectorSet | None:
        stored = self._sets.get(str(knowledge_id))
        if stored is None:
            return None
        return KnowledgeVectorSet(knowledge_id=stored.knowledge_id, chunks=list(stored.chunks))

    def save(self, knowledge_id: KnowledgeId, chunks: list[EmbeddedChunk]) -> None:
        self._sets[str(knowledge_id)] = KnowledgeVectorSet(knowledge_id=knowledge_id, chunks=list(chunks))

    def delete(self, knowledge_id: KnowledgeId) -> bool:
        return self._sets.pop(str(knowledge_id), None) is not None

    def list_ids(self) -> list[str]:
        return sorted(self._sets)

    def clear(self) -> int:
        removed = len(self._sets)
        self._sets.clear()
        return removed


class JsonKnowledgeVectorRepository:
    """Writes each knowledge set to `<directory>/knowledge_<id>.json`.

    File layout::

        {"knowledge_id": ..., "chunks": [{"content", "embedding", "metadata"}], "timestamp": ...}

    Files are replaced atomically, so a reader never sees a partial write.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def path_for(self, knowledge_id: KnowledgeId) -> Path:
        key = str(knowledge_id)
        if not _SAFE_ID.match(key):
            raise KnowledgeStoreError(f"Invalid knowledge id: {key!r}")
        return self.directory / f"{_FILE_PREFIX}{key}{_FILE_SUFFIX}"

    def load(self, knowledge_id: KnowledgeId) -> KnowledgeVectorSet | None:
        path = self.path_for(knowledge_id)
        if not path.exists():
            return None

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise KnowledgeStoreError(f"Could not read knowledge vectors from {path}: {exc}") from exc

        raw_chunks = data.get("chunks") if isinstance(data, dict) else None
        if not isinstance(raw_chunks, list):
            raise KnowledgeStoreError(f"Malformed knowledge vector file: {path}")

        chunks = [EmbeddedChunk.from_dict(item) for item in raw_chunks if isinstance(item, dict)]
        stored_id = data.get("knowledge_id", knowledge_id)
        logger.debug("Loaded %d chunks for knowledge %s", len(chunks), stored_id)
        return KnowledgeVectorSet(knowledge_id=stored_id, chunks=chunks)

    def save(self, knowledge_id: KnowledgeId, chunks: list[EmbeddedChunk]) -> None:
        path = self.path_for(knowledge_id)
        payload: dict[str, Any] = {
            "knowledge_id": knowledge_id,
            "chunks": [chunk.to_dict() for chunk in chunks],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise KnowledgeStoreError(f"Could not write knowledge vectors to {path}: {exc}") from exc
        logger.debug("Saved %d chunks for knowledge %s to %s", len(chunks), knowledge_id, path)

    def delete(self, knowledge_id: KnowledgeId) -> bool:
        path = self.path_for(knowledge_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise KnowledgeStoreError(f"Could not delete {path}: {exc}") from exc
        return True

    def list_ids(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(
            path.name[len(_FILE_PREFIX) : -len(_FILE_SUFFIX)]
            for path in self.directory.glob(f"{_FILE_PREFIX}*{_FILE_SUFFIX}")
        )

    def clear(self) -> int:
        removed = 0
        for knowledge_id in self.list_ids():
            if self.delete(knowledge_id):
                removed += 1
        return removed

"""
Test fixtures and sample data for memstore tests.
"""

import hashlib
import re
from typing import Any, Optional

import numpy as np

from memstore.config import SettingsManager
from memstore.memory.base import MemoryEntry, VectorMatch, VectorStore
from memstore.memory.embeddings import EmbeddingService

_TOKEN = re.compile(r"[a-z0-9]+")


class HashingEmbeddingService(EmbeddingService):
    """
    Deterministic bag-of-words embeddings.

    Each token is hashed into one of ``dimension`` buckets, so texts that
    share words are similar and identical texts have similarity 1.0.
    """

    def __init__(self, dimension: int = 256):
        self._dimension = dimension
        self.calls = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    def vector(self, text: str) -> list[float]:
        array = np.zeros(self._dimension, dtype=np.float64)
        for token in _TOKEN.findall(text.lower()):
            digest = hashlib.md5(token.encode()).digest()
            array[int.from_bytes(digest[:4], "little") % self._dimension] += 1.0
        norm = np.linalg.norm(array)
        if norm == 0:
            array[0] = 1.0
            norm = 1.0
        return (array / norm).tolist()

    async def embed_query(self, text: str) -> list[float]:
        self.calls += 1
        return self.vector(text)

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.calls += len(texts)
        return [self.vector(t) for t in texts]


class FakeLLMProvider:
    """Duck-typed LLM provider exposing only generate_embedding."""

    provider_name = "Fake"
    model_name = "fake-model"

    def __init__(self, dimension: int = 8, fail_times: int = 0, error: Exception | None = None):
        self.dimension = dimension
        self.fail_times = fail_times
        self.error = error or ConnectionError("temporary failure")
        self.calls: list[str] = []

    def is_configured(self) -> bool:
        return True

    async def generate_embedding(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error
        return [float(len(text) % 7 + i) for i in range(self.dimension)]


class FailingVectorStore(VectorStore):
    """Vector store whose writes or searches can be made to fail."""

    def __init__(self, fail_add: bool = False, fail_search: bool = False):
        self.fail_add = fail_add
        self.fail_search = fail_search
        self.vectors: dict[str, list[float]] = {}
        self.closed = False

    async def initialize(self) -> None:
        pass

    async def add_vector(self, id, vector, metadata=None) -> None:
        if self.fail_add:
            raise ConnectionError("vector store unavailable")
        self.vectors[id] = vector

    async def get_vector(self, id) -> Optional[list[float]]:
        return self.vectors.get(id)

    async def delete_vector(self, id) -> bool:
        return self.vectors.pop(id, None) is not None

    async def clear_vectors(self) -> None:
        self.vectors.clear()

    async def search_similar_vectors(self, query_vector, limit=5, metadata_filter=None) -> list[VectorMatch]:
        if self.fail_search:
            raise ConnectionError("vector store unavailable")
        return []

    async def count(self) -> int:
        return len(self.vectors)

    async def close(self) -> None:
        self.closed = True


def make_memory_record(
    id: str = "mem_1",
    content: Any = "The quick brown fox jumps",
    timestamp: int = 1_700_000_000_000,
    source: str | None = "user",
    type: str | None = "note",
    tags: list[str] | None = None,
    **metadata,
) -> dict[str, Any]:
    """Create a memory record dict as stored in a database."""
    meta: dict[str, Any] = dict(metadata)
    if source is not None:
        meta["source"] = source
    if type is not None:
        meta["type"] = type
    if tags is not None:
        meta["tags"] = tags
    return MemoryEntry(id=id, content=content, timestamp=timestamp, metadata=meta).to_record()


def make_chat_record(
    id: str,
    session_id: str,
    content: str,
    timestamp: int,
    type: str = "human",
) -> dict[str, Any]:
    """Create a chat message record dict."""
    return {
        "id": id,
        "sessionId": session_id,
        "type": type,
        "content": content,
        "timestamp": timestamp,
        "metadata": {},
    }


def make_settings_data(
    tmp_path,
    database: str = "sqlite",
    vector_store: str = "memory",
    **memory,
) -> dict[str, Any]:
    """Settings dict using local, file-backed backends under tmp_path."""
    return {
        "logging": {"level": "DEBUG"},
        "memory": {
            "enabled": True,
            "database": database,
            "vector_store": vector_store,
            "max_memories": 1000,
            "relevance_threshold": 0.7,
            "context_window_size": 5,
            "conversation_history_size": 100,
            **memory,
        },
        "embeddings": {"provider": "auto"},
        "databases": {
            "sqlite": {"filename": str(tmp_path / "memory.db")},
            "redis": {"url": "", "key_prefix": "test:"},
        },
        "vector_stores": {
            "chroma": {"directory": str(tmp_path / "chroma"), "collection_name": "test_memories"},
        },
    }


def make_settings(tmp_path, **kwargs) -> SettingsManager:
    """SettingsManager persisting to tmp_path/config.yaml."""
    return SettingsManager(path=tmp_path / "config.yaml", data=make_settings_data(tmp_path, **kwargs))

"""
In-memory Vector Store Implementation.

Exact cosine similarity over a dict of numpy arrays. Nothing persists;
useful for tests and small sessions where running Chroma is overkill.
"""

import logging
from typing import Any, Optional

import numpy as np

from .base import VectorMatch, VectorStore
from .filters import matches_metadata, prune_vector_metadata

logger = logging.getLogger("memstore.memory.in_memory")


def _cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity; 0.0 when either vector has zero length."""
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.dot(a, b) / norm)


class InMemoryVectorStore(VectorStore):
    """
    Brute-force vector store held in process memory.

    The dimension is fixed by the constructor or by the first vector added;
    vectors of any other dimension are rejected.
    """

    def __init__(self, dimension: Optional[int] = None):
        self.dimension = dimension
        self._vectors: dict[str, np.ndarray] = {}
        self._metadata: dict[str, dict[str, Any]] = {}
        self._ready = False

    async def initialize(self) -> None:
        self._ready = True
        logger.info(f"In-memory vector store initialized (dimension: {self.dimension or 'auto'})")

    def _ensure_initialized(self) -> None:
        if not self._ready:
            raise RuntimeError("InMemoryVectorStore not initialized. Call initialize() first.")

    async def add_vector(
        self,
        id: str,
        vector: list[float],
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self._ensure_initialized()
        array = np.asarray(vector, dtype=np.float32)
        if array.ndim != 1 or array.size == 0:
            raise ValueError(f"Vector for {id} must be a non-empty flat list")
        if self.dimension is None:
            self.dimension = int(array.size)
        elif array.size != self.dimension:
            raise ValueError(
                f"Vector for {id} has dimension {array.size}, expected {self.dimension}"
            )

        self._vectors[id] = array
        self._metadata[id] = prune_vector_metadata(metadata)
        logger.debug(f"Stored vector: {id}")

    async def get_vector(self, id: str) -> Optional[list[float]]:
        self._ensure_initialized()
        array = self._vectors.get(id)
        return array.tolist() if array is not None else None

    async def delete_vector(self, id: str) -> bool:
        self._ensure_initialized()
        self._metadata.pop(id, None)
        return self._vectors.pop(id, None) is not None

    async def clear_vectors(self) -> None:
        self._ensure_initialized()
        self._vectors.clear()
        self._metadata.clear()

    async def search_similar_vectors(
        self,
        query_vector: list[float],
        limit: int = 5,
        metadata_filter: Optional[dict[str, Any]] = None,
    ) -> list[VectorMatch]:
        self._ensure_initialized()
        if limit <= 0 or not self._vectors:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        metadata_filter = prune_vector_metadata(metadata_filter)

        matches = []
        for id, vector in self._vectors.items():
            if vector.size != query.size:
                continue
            if not matches_metadata(self._metadata[id], metadata_filter):
                continue
            matches.append(VectorMatch(id=id, score=_cosine_similarity(query, vector)))

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:limit]

    async def count(self) -> int:
        self._ensure_initialized()
        return len(self._vectors)

    async def close(self) -> None:
        """Clean up resources."""
        self._vectors.clear()
        self._metadata.clear()
        self._ready = False
        logger.info("In-memory vector store closed")

"""
ChromaDB Vector Store Implementation.

ChromaDB is perfect for local/development use:
- No server required
- Stores everything in a local directory
- Built-in persistence
- Good performance for moderate scale (< 1M vectors)

Chroma metadata only holds scalars, so tags are stored twice: as a JSON
string (to read them back) and as one boolean ``tag:<name>`` key per tag
(to filter on them with plain equality).
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from .base import VectorMatch, VectorStore
from .filters import prune_vector_metadata

logger = logging.getLogger("memstore.memory.chroma")

_ID_KEY = "memory_id"
_TAG_PREFIX = "tag:"


def to_chroma_metadata(id: str, metadata: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Pruned metadata in Chroma's flat scalar form. Never empty."""
    flat: dict[str, Any] = {_ID_KEY: id}
    for key, value in prune_vector_metadata(metadata).items():
        if key == "tags":
            flat["tags"] = json.dumps(value)
            for tag in value:
                flat[f"{_TAG_PREFIX}{tag}"] = True
        else:
            flat[key] = value
    return flat


def from_chroma_metadata(flat: Optional[dict[str, Any]]) -> dict[str, Any]:
    metadata = {}
    for key, value in (flat or {}).items():
        if key == _ID_KEY or key.startswith(_TAG_PREFIX):
            continue
        if key == "tags":
            try:
                metadata["tags"] = json.loads(value)
            except (TypeError, ValueError):
                metadata["tags"] = []
        else:
            metadata[key] = value
    return metadata


def compile_where(metadata_filter: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """
    Compile a metadata filter into a Chroma ``where`` clause.

    Returns:
        None for no filter, a single clause, or an ``$and`` of clauses
    """
    clauses = []
    for key, value in prune_vector_metadata(metadata_filter).items():
        if key == "tags":
            clauses.extend({f"{_TAG_PREFIX}{tag}": {"$eq": True}} for tag in value)
        else:
            clauses.append({key: {"$eq": value}})

    # A scalar tag filter is pruned away above; treat it as a single required tag
    tag = (metadata_filter or {}).get("tags")
    if isinstance(tag, str) and tag:
        clauses.append({f"{_TAG_PREFIX}{tag}": {"$eq": True}})

    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class ChromaVectorStore(VectorStore):
    """
    ChromaDB implementation of the vector store.

    Stores vectors locally with full persistence.
    """

    def __init__(
        self,
        persist_directory: str = "./.memstore/chroma",
        collection_name: str = "codessa_memories",
    ):
        self.persist_directory = Path(persist_directory)
        self.collection_name = collection_name
        self._client = None
        self._collection = None
        logger.info(f"ChromaVectorStore configured with directory: {persist_directory}")

    async def initialize(self) -> None:
        """Initialize ChromaDB client and collection."""
        try:
            import chromadb
            from chromadb.config import Settings
        except ImportError:
            raise RuntimeError(
                "chromadb not installed. Install with: pip install chromadb"
            )

        # Create persist directory if needed
        self.persist_directory.mkdir(parents=True, exist_ok=True)

        self._client = chromadb.PersistentClient(
            path=str(self.persist_directory),
            settings=Settings(
                anonymized_telemetry=False,
                allow_reset=True,
            ),
        )
        self._collection = self._open_collection()

        count = self._collection.count()
        logger.info(f"ChromaDB initialized with {count} existing vectors")

    def _open_collection(self):
        return self._client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine", "description": "Semantic memory vectors"},
        )

    def _ensure_initialized(self) -> None:
        """Ensure the store is initialized."""
        if self._collection is None:
            raise RuntimeError("ChromaVectorStore not initialized. Call initialize() first.")

    async def add_vector(
        self,
        id: str,
        vector: list[float],
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self._ensure_initialized()
        self._collection.upsert(
            ids=[id],
            embeddings=[list(vector)],
            metadatas=[to_chroma_metadata(id, metadata)],
        )
        logger.debug(f"Stored vector: {id}")

    async def get_vector(self, id: str) -> Optional[list[float]]:
        self._ensure_initialized()
        results = self._collection.get(ids=[id], include=["embeddings"])
        embeddings = results.get("embeddings")
        if not results["ids"] or embeddings is None or len(embeddings) == 0:
            return None
        return [float(x) for x in embeddings[0]]

    async def get_metadata(self, id: str) -> Optional[dict[str, Any]]:
        """Stored metadata for a vector, in its unflattened form."""
        self._ensure_initialized()
        results = self._collection.get(ids=[id], include=["metadatas"])
        if not results["ids"]:
            return None
        return from_chroma_metadata(results["metadatas"][0])

    async def delete_vector(self, id: str) -> bool:
        self._ensure_initialized()
        existing = self._collection.get(ids=[id], include=[])
        if not existing["ids"]:
            return False
        self._collection.delete(ids=[id])
        logger.debug(f"Deleted vector: {id}")
        return True

    async def clear_vectors(self) -> None:
        self._ensure_initialized()
        self._client.delete_collection(self.collection_name)
        self._collection = self._open_collection()
        logger.info(f"Cleared Chroma collection {self.collection_name}")

    async def search_similar_vectors(
        self,
        query_vector: list[float],
        limit: int = 5,
        metadata_filter: Optional[dict[str, Any]] = None,
    ) -> list[VectorMatch]:
        """Search for similar vectors."""
        self._ensure_initialized()

        total = self._collection.count()
        if total == 0 or limit <= 0:
            return []

        # ChromaDB returns cosine distance (lower is better); similarity = 1 - distance
        results = self._collection.query(
            query_embeddings=[list(query_vector)],
            n_results=min(limit, total),
            where=compile_where(metadata_filter),
            include=["distances"],
        )

        matches = []
        if results["ids"] and results["ids"][0]:
            for i, id in enumerate(results["ids"][0]):
                matches.append(VectorMatch(id=id, score=1 - results["distances"][0][i]))

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:limit]

    async def count(self) -> int:
        """Get total number of stored vectors."""
        self._ensure_initialized()
        return self._collection.count()

    async def close(self) -> None:
        """Clean up resources."""
        # ChromaDB PersistentClient handles cleanup automatically
        self._client = None
        self._collection = None
        logger.info("ChromaDB connection closed")

"""
Base interfaces and data structures for the memory system.

Defines the records that get stored and the abstract contracts that
database and vector store backends must implement.
"""

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from .filters import QueryFilter, Sort, as_filter, content_as_text

MEMORIES_COLLECTION = "memories"
CHAT_HISTORY_COLLECTION = "chat_history"


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclass
class MemoryEntry:
    """
    A persisted unit of semantic content.

    The database and the vector store each hold their own copy; the
    embedding is kept on the database record so the index can be rebuilt.
    """
    id: str
    content: Any  # text, or any JSON-serializable value
    timestamp: int  # ms since epoch, immutable
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: Optional[list[float]] = None

    @staticmethod
    def new_id() -> str:
        return f"mem_{uuid.uuid4()}"

    @property
    def text(self) -> str:
        """Content as text, which is what gets embedded."""
        return content_as_text(self.content)

    @property
    def tags(self) -> list[str]:
        return list(self.metadata.get("tags") or [])

    @property
    def relevance(self) -> Optional[float]:
        """Similarity score, only present on similarity-search results."""
        return self.metadata.get("relevance")

    def to_record(self) -> dict[str, Any]:
        record = {
            "id": self.id,
            "content": self.content,
            "timestamp": self.timestamp,
            "metadata": {k: v for k, v in self.metadata.items() if k != "relevance"},
        }
        if self.embedding is not None:
            record["embedding"] = list(self.embedding)
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "MemoryEntry":
        return cls(
            id=record["id"],
            content=record.get("content"),
            timestamp=int(record.get("timestamp") or 0),
            metadata=dict(record.get("metadata") or {}),
            embedding=record.get("embedding"),
        )


class MessageType(str, Enum):
    HUMAN = "human"
    AI = "ai"
    SYSTEM = "system"


@dataclass
class ChatMessage:
    """One turn of a conversation, grouped by session."""
    content: str
    type: MessageType = MessageType.HUMAN
    session_id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = ""
    timestamp: int = 0

    @staticmethod
    def new_id() -> str:
        return f"chat_{uuid.uuid4()}"

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "type": self.type.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "ChatMessage":
        return cls(
            id=record["id"],
            session_id=record.get("sessionId", ""),
            type=MessageType(record.get("type", MessageType.SYSTEM.value)),
            content=record.get("content", ""),
            timestamp=int(record.get("timestamp") or 0),
            metadata=dict(record.get("metadata") or {}),
        )


@dataclass
class MemoryFilter:
    """Structured filter for memory searches."""
    source: Optional[str] = None
    type: Optional[str] = None
    tags: Optional[list[str]] = None
    from_timestamp: Optional[int] = None
    to_timestamp: Optional[int] = None
    extra: dict[str, Any] = field(default_factory=dict)  # matched against metadata.<key>

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "MemoryFilter":
        """Build from a plain dict; accepts camelCase timestamp keys too."""
        data = dict(data or {})
        return cls(
            source=data.pop("source", None),
            type=data.pop("type", None),
            tags=data.pop("tags", None),
            from_timestamp=data.pop("from_timestamp", data.pop("fromTimestamp", None)),
            to_timestamp=data.pop("to_timestamp", data.pop("toTimestamp", None)),
            extra=data,
        )

    def to_query(self, text: Optional[str] = None) -> QueryFilter:
        query = QueryFilter()
        if self.source:
            query.where("metadata.source", self.source)
        if self.type:
            query.where("metadata.type", self.type)
        query.tags_all(list(self.tags or []))
        query.time_range(self.from_timestamp, self.to_timestamp)
        for key, value in self.extra.items():
            query.where(f"metadata.{key}", value)
        return query.text(text)

    def to_metadata(self) -> dict[str, Any]:
        """The filter as a metadata mapping, for vector store filtering."""
        metadata: dict[str, Any] = dict(self.extra)
        if self.source:
            metadata["source"] = self.source
        if self.type:
            metadata["type"] = self.type
        if self.tags:
            metadata["tags"] = list(self.tags)
        return metadata


@dataclass
class MemorySearchOptions:
    """Options for structured and similarity searches."""
    query: str = ""
    limit: Optional[int] = None
    filter: Optional[MemoryFilter] = None
    relevance_threshold: Optional[float] = None

    def __post_init__(self):
        if isinstance(self.filter, Mapping):
            self.filter = MemoryFilter.from_dict(self.filter)


@dataclass
class VectorMatch:
    """A search hit from a vector store."""
    id: str
    score: float  # cosine similarity, -1..1, higher is more similar


class VectorStore(ABC):
    """
    Abstract interface for vector storage backends.

    Implementations: in-memory (numpy), ChromaDB (local), pgvector (production)
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the vector store (create collections, etc.)."""
        pass

    @abstractmethod
    async def add_vector(
        self,
        id: str,
        vector: list[float],
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Store a vector, replacing any existing vector with the same id.

        Args:
            id: Id of the memory entry the vector belongs to
            vector: The embedding
            metadata: Pruned, filterable metadata
        """
        pass

    @abstractmethod
    async def get_vector(self, id: str) -> Optional[list[float]]:
        """Get a stored vector by id."""
        pass

    @abstractmethod
    async def delete_vector(self, id: str) -> bool:
        """Delete a vector. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def clear_vectors(self) -> None:
        """Remove every vector."""
        pass

    @abstractmethod
    async def search_similar_vectors(
        self,
        query_vector: list[float],
        limit: int = 5,
        metadata_filter: Optional[dict[str, Any]] = None,
    ) -> list[VectorMatch]:
        """
        Search for the most similar vectors.

        Args:
            query_vector: The embedding to search for
            limit: Maximum number of results
            metadata_filter: Exact-match / inclusion filter on metadata

        Returns:
            Matches ordered by similarity, highest first
        """
        pass

    @abstractmethod
    async def count(self) -> int:
        """Get total number of stored vectors."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources."""
        pass


QueryLike = QueryFilter | Mapping[str, Any] | None
SortLike = Sort | Mapping[str, int] | None


class Database(ABC):
    """
    Abstract interface for structured record storage.

    Records are plain dicts with at least ``id``, ``content``,
    ``timestamp`` and ``metadata``, grouped into named collections.

    Implementations: SQLite, PostgreSQL, MySQL, MongoDB, Redis
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Connect and create the default collections."""
        pass

    @abstractmethod
    async def ensure_collection(self, collection: str) -> None:
        """Create tables/indexes for a collection if they do not exist."""
        pass

    @abstractmethod
    async def add_record(self, collection: str, record: dict[str, Any]) -> str:
        """Insert (or replace) a record. Returns its id."""
        pass

    @abstractmethod
    async def get_record(self, collection: str, id: str) -> Optional[dict[str, Any]]:
        """Get a record by id, or None."""
        pass

    @abstractmethod
    async def update_record(self, collection: str, id: str, record: dict[str, Any]) -> bool:
        """Replace an existing record. Returns False if it does not exist."""
        pass

    @abstractmethod
    async def delete_record(self, collection: str, id: str) -> bool:
        """Delete a record. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def query_records(
        self,
        collection: str,
        query: QueryLike = None,
        limit: Optional[int] = None,
        sort: SortLike = None,
    ) -> list[dict[str, Any]]:
        """
        Query records.

        Args:
            collection: Collection name
            query: A QueryFilter or the equivalent generic mapping
            limit: Maximum number of records (None or <= 0 for all)
            sort: Ordering, newest first by default

        Returns:
            Matching records
        """
        pass

    @abstractmethod
    async def clear_collection(self, collection: str) -> None:
        """Delete every record in a collection."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources."""
        pass

    async def get_records_by_ids(self, collection: str, ids: list[str]) -> list[dict[str, Any]]:
        """Fetch several records; missing ids are skipped."""
        records = []
        for id in ids:
            record = await self.get_record(collection, id)
            if record is not None:
                records.append(record)
        return records

    async def delete_records(self, collection: str, query: QueryLike = None) -> int:
        """Delete every record matching a query. Returns the number deleted."""
        deleted = 0
        for record in await self.query_records(collection, query):
            if await self.delete_record(collection, record["id"]):
                deleted += 1
        return deleted

    async def count(self, collection: str) -> int:
        """Number of records in a collection."""
        return len(await self.query_records(collection))

    @staticmethod
    def _prepare(query: QueryLike, limit: Optional[int], sort: SortLike) -> tuple[QueryFilter, Optional[int], Sort]:
        """Normalize query arguments shared by every backend."""
        effective_limit = limit if isinstance(limit, int) and limit > 0 else None
        return as_filter(query), effective_limit, Sort.from_value(sort)

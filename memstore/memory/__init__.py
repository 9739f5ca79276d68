"""
Semantic Memory System.

Persists memory entries in a structured database and a vector index,
and retrieves them by structured filter or by semantic similarity.
"""

from .base import (
    ChatMessage,
    Database,
    MemoryEntry,
    MemoryFilter,
    MemorySearchOptions,
    MessageType,
    VectorMatch,
    VectorStore,
)
from .chat_history import ChatHistoryStore
from .chroma_store import ChromaVectorStore
from .embeddings import EmbeddingService, create_embedding_service
from .errors import (
    EmbeddingUnavailableError,
    InitializationError,
    MemoryStoreError,
    NotInitializedError,
    QueryError,
    UnknownBackendError,
)
from .factory import create_database, create_vector_store
from .filters import Condition, Operator, QueryFilter, Sort, prune_vector_metadata
from .in_memory_store import InMemoryVectorStore
from .memory_provider import MemoryProvider, MemoryState, create_memory_provider

__all__ = [
    "ChatMessage",
    "Database",
    "MemoryEntry",
    "MemoryFilter",
    "MemorySearchOptions",
    "MessageType",
    "VectorMatch",
    "VectorStore",
    "ChatHistoryStore",
    "ChromaVectorStore",
    "InMemoryVectorStore",
    "EmbeddingService",
    "create_embedding_service",
    "create_database",
    "create_vector_store",
    "Condition",
    "Operator",
    "QueryFilter",
    "Sort",
    "prune_vector_metadata",
    "MemoryProvider",
    "MemoryState",
    "create_memory_provider",
    "MemoryStoreError",
    "InitializationError",
    "EmbeddingUnavailableError",
    "UnknownBackendError",
    "NotInitializedError",
    "QueryError",
]

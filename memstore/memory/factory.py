"""
Backend registry.

Maps configured backend kinds to constructors. An unknown kind fails
fast with UnknownBackendError instead of silently falling back.
"""

import logging
from typing import Callable, Optional

from ..config import (
    DatabaseKind,
    SettingsManager,
    VectorStoreKind,
)
from .base import Database, VectorStore
from .chroma_store import ChromaVectorStore
from .databases import (
    MongoDBDatabase,
    MySQLDatabase,
    PostgresDatabase,
    RedisDatabase,
    SQLiteDatabase,
)
from .errors import UnknownBackendError
from .in_memory_store import InMemoryVectorStore
from .pgvector_store import PgVectorStore

logger = logging.getLogger("memstore.memory.factory")

DatabaseBuilder = Callable[[SettingsManager], Database]
VectorStoreBuilder = Callable[[SettingsManager, Optional[int]], VectorStore]


def _sqlite(settings: SettingsManager) -> Database:
    cfg = settings.database_config(DatabaseKind.SQLITE)
    return SQLiteDatabase(filename=cfg.filename)


def _postgres(settings: SettingsManager) -> Database:
    cfg = settings.database_config(DatabaseKind.POSTGRES)
    return PostgresDatabase(connection_string=cfg.connection_string, schema=cfg.schema)


def _mysql(settings: SettingsManager) -> Database:
    cfg = settings.database_config(DatabaseKind.MYSQL)
    return MySQLDatabase(
        host=cfg.host,
        port=int(cfg.port),
        user=cfg.user,
        password=cfg.password,
        database=cfg.database,
        table=cfg.table,
    )


def _mongodb(settings: SettingsManager) -> Database:
    cfg = settings.database_config(DatabaseKind.MONGODB)
    return MongoDBDatabase(connection_string=cfg.connection_string, database=cfg.database)


def _redis(settings: SettingsManager) -> Database:
    cfg = settings.database_config(DatabaseKind.REDIS)
    return RedisDatabase(url=cfg.url, key_prefix=cfg.key_prefix)


def _memory_store(settings: SettingsManager, dimension: Optional[int]) -> VectorStore:
    return InMemoryVectorStore(dimension=dimension)


def _chroma(settings: SettingsManager, dimension: Optional[int]) -> VectorStore:
    cfg = settings.vector_store_config(VectorStoreKind.CHROMA)
    return ChromaVectorStore(persist_directory=cfg.directory, collection_name=cfg.collection_name)


def _pgvector(settings: SettingsManager, dimension: Optional[int]) -> VectorStore:
    cfg = settings.vector_store_config(VectorStoreKind.PGVECTOR)
    return PgVectorStore(
        connection_string=cfg.connection_string,
        table_name=cfg.table_name,
        embedding_dimension=cfg.dimension or dimension,
    )


DATABASE_BACKENDS: dict[DatabaseKind, DatabaseBuilder] = {
    DatabaseKind.SQLITE: _sqlite,
    DatabaseKind.POSTGRES: _postgres,
    DatabaseKind.MYSQL: _mysql,
    DatabaseKind.MONGODB: _mongodb,
    DatabaseKind.REDIS: _redis,
}

VECTOR_STORE_BACKENDS: dict[VectorStoreKind, VectorStoreBuilder] = {
    VectorStoreKind.MEMORY: _memory_store,
    VectorStoreKind.CHROMA: _chroma,
    VectorStoreKind.PGVECTOR: _pgvector,
}


def _parse_kind(enum_cls, kind, label: str):
    try:
        return enum_cls(kind)
    except ValueError:
        choices = ", ".join(k.value for k in enum_cls)
        raise UnknownBackendError(f"Unknown {label} '{kind}'. Choose one of: {choices}")


def create_database(kind: DatabaseKind | str, settings: SettingsManager) -> Database:
    """
    Factory function to create the configured database backend.

    Raises:
        UnknownBackendError: If the kind has no registered implementation
    """
    kind = _parse_kind(DatabaseKind, kind, "database")
    builder = DATABASE_BACKENDS.get(kind)
    if builder is None:
        raise UnknownBackendError(f"No database backend registered for '{kind.value}'")
    logger.info(f"Creating database backend: {kind.value}")
    return builder(settings)


def create_vector_store(
    kind: VectorStoreKind | str,
    settings: SettingsManager,
    dimension: Optional[int] = None,
) -> VectorStore:
    """
    Factory function to create the configured vector store backend.

    Args:
        kind: Vector store kind
        settings: Settings to read backend configuration from
        dimension: Embedding dimension, when the embedding service knows it

    Raises:
        UnknownBackendError: If the kind has no registered implementation
    """
    kind = _parse_kind(VectorStoreKind, kind, "vector store")
    builder = VECTOR_STORE_BACKENDS.get(kind)
    if builder is None:
        raise UnknownBackendError(f"No vector store backend registered for '{kind.value}'")
    logger.info(f"Creating vector store backend: {kind.value}")
    return builder(settings, dimension)

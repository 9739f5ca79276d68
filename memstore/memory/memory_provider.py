"""
Memory Provider - Orchestrates the memory system.

This is the high-level interface callers use. It handles:
- Lazy, single-flight initialization of the configured backends
- Writing memories to the database (record of truth) and the vector store
- Structured and semantic search
- Reacting to settings changes
- Chat history, through a ChatHistoryStore on the same database

Dual-write policy: the database is written first. If the vector write
then fails, the database record is deleted again and the error is
raised, so a memory is either in both stores or in neither. Deletes and
clears are attempted against both stores independently.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from ..config import SettingsManager, MemorySettings
from ..llm import LLMService, create_llm_provider
from .base import (
    MEMORIES_COLLECTION,
    ChatMessage,
    Database,
    MemoryEntry,
    MemoryFilter,
    MemorySearchOptions,
    VectorStore,
    now_ms,
)
from .chat_history import ChatHistoryStore
from .embeddings import EmbeddingService, create_embedding_service
from .errors import InitializationError, NotInitializedError, QueryError
from .factory import create_database, create_vector_store
from .filters import prune_vector_metadata

logger = logging.getLogger("memstore.memory.provider")

ChangeListener = Callable[[str, Optional[str]], Any]

# Settings prefixes that always require reconnecting
_REINIT_KEYS = ("memory.vector_store", "memory.database", "memory.enabled", "embeddings.")

# Backend sections addressed under the kind key (memory.database.sqlite.filename)
_BACKEND_SECTIONS = {"database": "databases", "vector_store": "vector_stores"}

DEFAULT_SEARCH_LIMIT = 10


class MemoryState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"


def _settings_key(key: str) -> str:
    """Map a memory settings key to its dotted config key."""
    full_key = key if "." in key else f"memory.{key}"
    parts = full_key.split(".")
    # memory.database.<kind>.* lives under databases.<kind>.*
    if len(parts) >= 3 and parts[0] == "memory" and parts[1] in _BACKEND_SECTIONS:
        return ".".join([_BACKEND_SECTIONS[parts[1]], *parts[2:]])
    return full_key


def _is_empty(content: Any) -> bool:
    if content is None:
        return True
    if isinstance(content, str):
        return not content.strip()
    if isinstance(content, (dict, list, tuple)):
        return len(content) == 0
    return False


class MemoryProvider:
    """
    High-level memory management.

    Args:
        settings: Settings source; changes to backend settings trigger
            reinitialization on the next operation
        llm_service: Registry whose default provider supplies embeddings
        database_factory: ``(kind, settings) -> Database``
        vector_store_factory: ``(kind, settings, dimension) -> VectorStore``
        embedding_factory: ``(llm_provider, embedding_config) -> EmbeddingService``
        lazy: Initialize on first use; when False, operations before
            initialize() raise NotInitializedError
    """

    def __init__(
        self,
        settings: SettingsManager,
        llm_service: Optional[LLMService] = None,
        database_factory=create_database,
        vector_store_factory=create_vector_store,
        embedding_factory=create_embedding_service,
        lazy: bool = True,
    ):
        self.settings = settings
        self.llm_service = llm_service
        self._database_factory = database_factory
        self._vector_store_factory = vector_store_factory
        self._embedding_factory = embedding_factory
        self.lazy = lazy

        self._state = MemoryState.UNINITIALIZED
        self._init_task: Optional[asyncio.Task] = None
        self._database: Optional[Database] = None
        self._vector_store: Optional[VectorStore] = None
        self._embeddings: Optional[EmbeddingService] = None
        self._chat: Optional[ChatHistoryStore] = None
        self._memory_settings = MemorySettings()
        # Instances replaced by a settings change, closed on next initialize
        self._stale: list[Database | VectorStore] = []
        # Set when a reinit key changes while an initialization is running
        self._reinit_pending = False
        self._listeners: list[ChangeListener] = []

        self._remove_settings_listener = settings.add_listener(self._on_settings_changed)
        logger.info("MemoryProvider created")

    @property
    def state(self) -> MemoryState:
        return self._state

    @property
    def database(self) -> Optional[Database]:
        return self._database

    @property
    def vector_store(self) -> Optional[VectorStore]:
        return self._vector_store

    @property
    def embedding_service(self) -> Optional[EmbeddingService]:
        return self._embeddings

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Initialize the configured backends.

        Concurrent callers share one in-flight initialization.

        Raises:
            InitializationError: If any component could not be set up; the
                provider is left uninitialized with nothing half-open
        """
        if self._state == MemoryState.INITIALIZED:
            return

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        task = self._init_task
        try:
            # Shielded so one cancelled caller does not cancel it for everyone
            await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    async def _initialize(self) -> None:
        self._state = MemoryState.INITIALIZING
        self._reinit_pending = False
        await self._close_stale()

        memory_settings = self.settings.memory_settings()
        self._memory_settings = memory_settings
        database: Optional[Database] = None
        vector_store: Optional[VectorStore] = None
        try:
            if not memory_settings.enabled:
                raise InitializationError("Memory is disabled: set memory.enabled to true")

            llm_provider = self.llm_service.get_default_provider() if self.llm_service else None
            embeddings = self._embedding_factory(llm_provider, self.settings.embedding_config())

            database = self._database_factory(memory_settings.database, self.settings)
            await database.initialize()

            vector_store = self._vector_store_factory(
                memory_settings.vector_store, self.settings, embeddings.dimension
            )
            await vector_store.initialize()
        except Exception as e:
            logger.error(f"Memory initialization failed: {e}")
            for component in (vector_store, database):
                if component is not None:
                    await self._close_quietly(component)
            self._clear_components()
            self._state = MemoryState.UNINITIALIZED
            if isinstance(e, InitializationError):
                raise
            raise InitializationError(f"Memory initialization failed: {e}") from e

        self._embeddings = embeddings
        self._database = database
        self._vector_store = vector_store
        self._chat = ChatHistoryStore(
            database, default_limit=memory_settings.conversation_history_size
        )
        self._state = MemoryState.INITIALIZED
        logger.info(
            f"MemoryProvider initialized (database: {memory_settings.database}, "
            f"vector store: {memory_settings.vector_store})"
        )
        if self._reinit_pending:
            self._invalidate()
        else:
            self._memory_settings = self.settings.memory_settings()

    def _clear_components(self) -> None:
        self._database = None
        self._vector_store = None
        self._embeddings = None
        self._chat = None

    async def _ready(self) -> None:
        if self._state == MemoryState.INITIALIZED:
            return
        if not self.lazy:
            raise NotInitializedError("MemoryProvider not initialized. Call initialize() first.")
        # A settings change during initialization leaves it uninitialized again
        while self._state != MemoryState.INITIALIZED:
            await self.initialize()

    @staticmethod
    async def _close_quietly(component: Database | VectorStore) -> None:
        try:
            await component.close()
        except Exception as e:
            logger.warning(f"Failed to close {type(component).__name__}: {e}")

    async def _close_stale(self) -> None:
        stale, self._stale = self._stale, []
        for component in stale:
            await self._close_quietly(component)

    def _invalidate(self) -> None:
        """Drop the current backends; the next operation reconnects."""
        for component in (self._database, self._vector_store):
            if component is not None:
                self._stale.append(component)
        self._clear_components()
        self._state = MemoryState.UNINITIALIZED
        logger.info("Memory settings changed; backends will be reinitialized on next use")

    def _needs_reinit(self, key: str) -> bool:
        if key.startswith(_REINIT_KEYS):
            return True
        active = self._memory_settings
        return key.startswith(f"databases.{active.database}") or key.startswith(
            f"vector_stores.{active.vector_store}"
        )

    async def _on_settings_changed(self, key: str, value: Any) -> None:
        if self._state == MemoryState.UNINITIALIZED:
            return
        if self._state == MemoryState.INITIALIZING:
            if self._needs_reinit(key):
                self._reinit_pending = True
            return
        if self._needs_reinit(key):
            self._invalidate()
        elif key.startswith("memory."):
            # Limits and thresholds apply without reconnecting
            self._memory_settings = self.settings.memory_settings()

    async def close(self) -> None:
        """Clean up resources."""
        task = self._init_task
        if task is not None and not task.done():
            try:
                await task
            except Exception as e:
                logger.debug(f"Pending initialization failed during close: {e}")

        for component in (self._vector_store, self._database):
            if component is not None:
                await self._close_quietly(component)
        await self._close_stale()
        self._clear_components()
        self._state = MemoryState.UNINITIALIZED
        logger.info("MemoryProvider closed")

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def add_change_listener(self, callback: ChangeListener) -> Callable[[], None]:
        """
        Register a callback ``(event, memory_id)`` fired after add, delete and clear.

        ``event`` is "add", "delete" or "clear"; ``memory_id`` is None for clear.

        Returns:
            A function that removes the listener again
        """
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    async def _notify(self, event: str, memory_id: Optional[str] = None) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event, memory_id)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Memory change listener failed on {event}: {e}")

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    async def add_memory(self, content: Any, metadata: Optional[Mapping[str, Any]] = None) -> MemoryEntry:
        """
        Store a new memory.

        Args:
            content: Text (or any JSON-serializable value) to remember
            metadata: Source, type, tags and any other attributes

        Returns:
            The stored entry, including its embedding

        Raises:
            ValueError: If content is empty
            QueryError: If embedding or either store write failed
        """
        if _is_empty(content):
            raise ValueError("Memory content must not be empty")
        await self._ready()

        entry = MemoryEntry(
            id=MemoryEntry.new_id(),
            content=content,
            timestamp=now_ms(),
            metadata={k: v for k, v in (metadata or {}).items() if k != "relevance"},
        )

        try:
            entry.embedding = await self._embeddings.embed_query(entry.text)
        except Exception as e:
            logger.error(f"Failed to embed memory: {e}")
            raise QueryError(f"Failed to embed memory: {e}") from e

        try:
            await self._database.add_record(MEMORIES_COLLECTION, entry.to_record())
        except Exception as e:
            logger.error(f"Failed to store memory {entry.id}: {e}")
            raise QueryError(f"Failed to store memory: {e}") from e

        try:
            await self._vector_store.add_vector(
                entry.id, entry.embedding, prune_vector_metadata(entry.metadata)
            )
        except Exception as e:
            logger.error(f"Failed to index memory {entry.id}, removing database record: {e}")
            try:
                await self._database.delete_record(MEMORIES_COLLECTION, entry.id)
            except Exception as cleanup_error:
                logger.error(f"Failed to remove unindexed memory {entry.id}: {cleanup_error}")
            raise QueryError(f"Failed to index memory: {e}") from e

        logger.debug(f"Stored memory: {entry.id}")
        await self._notify("add", entry.id)
        return entry

    async def get_memories(self, limit: Optional[int] = None) -> list[MemoryEntry]:
        """Most recent memories, newest first. Defaults to memory.max_memories."""
        await self._ready()
        effective_limit = self._memory_settings.max_memories if limit is None else limit
        try:
            records = await self._database.query_records(MEMORIES_COLLECTION, limit=effective_limit)
        except Exception as e:
            logger.error(f"Failed to get memories: {e}")
            return []
        return [MemoryEntry.from_record(r) for r in records]

    async def get_memory(self, id: str) -> Optional[MemoryEntry]:
        await self._ready()
        try:
            record = await self._database.get_record(MEMORIES_COLLECTION, id)
        except Exception as e:
            logger.error(f"Failed to get memory {id}: {e}")
            return None
        return MemoryEntry.from_record(record) if record else None

    async def delete_memory(self, id: str) -> bool:
        """
        Delete a memory from both stores.

        A memory missing from either store is not an error.

        Returns:
            False only if a backend raised
        """
        await self._ready()
        ok = True
        try:
            await self._database.delete_record(MEMORIES_COLLECTION, id)
        except Exception as e:
            logger.error(f"Failed to delete memory {id} from database: {e}")
            ok = False
        try:
            await self._vector_store.delete_vector(id)
        except Exception as e:
            logger.error(f"Failed to delete memory {id} from vector store: {e}")
            ok = False

        await self._notify("delete", id)
        return ok

    async def clear_memories(self) -> None:
        """
        Remove every memory from both stores.

        Raises:
            QueryError: If either store failed to clear (both are attempted)
        """
        await self._ready()
        errors = []
        try:
            await self._database.clear_collection(MEMORIES_COLLECTION)
        except Exception as e:
            logger.error(f"Failed to clear memories from database: {e}")
            errors.append(e)
        try:
            await self._vector_store.clear_vectors()
        except Exception as e:
            logger.error(f"Failed to clear vector store: {e}")
            errors.append(e)

        await self._notify("clear")
        if errors:
            raise QueryError(f"Failed to clear memories: {errors[0]}") from errors[0]
        logger.info("All memories cleared")

    @staticmethod
    def _coerce_options(options: MemorySearchOptions | Mapping[str, Any] | None, **kwargs) -> MemorySearchOptions:
        if isinstance(options, MemorySearchOptions):
            return options
        values = dict(options or {})
        values.update(kwargs)
        if "relevanceThreshold" in values:
            values["relevance_threshold"] = values.pop("relevanceThreshold")
        return MemorySearchOptions(**values)

    async def search_memories(
        self,
        options: MemorySearchOptions | Mapping[str, Any] | None = None,
        **kwargs,
    ) -> list[MemoryEntry]:
        """
        Structured search.

        Args:
            options: Query text, filter and limit (default 10); a dict works too

        Returns:
            Matching memories, newest first; empty on backend failure
        """
        options = self._coerce_options(options, **kwargs)
        await self._ready()

        memory_filter = options.filter or MemoryFilter()
        limit = options.limit if options.limit is not None else DEFAULT_SEARCH_LIMIT
        try:
            records = await self._database.query_records(
                MEMORIES_COLLECTION, memory_filter.to_query(options.query), limit=limit
            )
        except Exception as e:
            logger.error(f"Memory search failed: {e}")
            return []
        return [MemoryEntry.from_record(r) for r in records]

    async def search_similar_memories(
        self,
        query: str,
        options: MemorySearchOptions | Mapping[str, Any] | None = None,
        **kwargs,
    ) -> list[MemoryEntry]:
        """
        Semantic search.

        Results below the relevance threshold are dropped; each result
        carries its score as ``metadata["relevance"]``. Any failure on the
        vector path falls back to search_memories.

        Args:
            query: Text to find similar memories for
            options: limit (default memory.context_window_size), filter and
                relevance_threshold (default memory.relevance_threshold)

        Returns:
            Memories ordered by relevance, highest first
        """
        options = self._coerce_options(options, **kwargs)
        await self._ready()

        limit = options.limit if options.limit is not None else self._memory_settings.context_window_size
        threshold = (
            options.relevance_threshold
            if options.relevance_threshold is not None
            else self._memory_settings.relevance_threshold
        )

        try:
            vector = await self._embeddings.embed_query(query)
            metadata_filter = options.filter.to_metadata() if options.filter else {}
            fetch = limit
            if metadata_filter.pop("tags", None):
                # Indexed tags are capped at MAX_TAGS, so the post-filter decides
                fetch = max(limit, await self._vector_store.count())
            matches = await self._vector_store.search_similar_vectors(
                vector, limit=fetch, metadata_filter=prune_vector_metadata(metadata_filter) or None
            )

            kept = [m for m in matches if m.score >= threshold]
            if not kept:
                return []

            records = await self._database.get_records_by_ids(MEMORIES_COLLECTION, [m.id for m in kept])
            by_id = {r["id"]: r for r in records}
            # Conditions the vector index cannot see (timestamps, non-indexed keys)
            post_filter = options.filter.to_query() if options.filter else None

            results = []
            for match in kept:
                record = by_id.get(match.id)
                if record is None:
                    logger.debug(f"Vector {match.id} has no database record; skipping")
                    continue
                if post_filter is not None and not post_filter.matches(record):
                    continue
                entry = MemoryEntry.from_record(record)
                entry.metadata = {**entry.metadata, "relevance": match.score}
                results.append(entry)

            results.sort(key=lambda e: e.relevance, reverse=True)
            return results[:limit]
        except Exception as e:
            logger.warning(f"Similarity search failed, falling back to structured search: {e}")
            return await self.search_memories(
                MemorySearchOptions(query=query, limit=limit, filter=options.filter)
            )

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_memory_settings(self) -> MemorySettings:
        return self.settings.memory_settings()

    async def update_memory_settings(self, changes: Mapping[str, Any]) -> bool:
        """
        Persist settings changes.

        Plain keys are memory settings (``vector_store`` -> ``memory.vector_store``);
        dotted keys are used as-is (``databases.sqlite.filename``), except that
        ``memory.database.<kind>.*`` and ``memory.vector_store.<kind>.*`` are
        stored under ``databases.<kind>`` and ``vector_stores.<kind>``. Changing a
        backend kind or the active backend's section makes the next
        operation reconnect; existing data is not migrated.

        Returns:
            True if every key was saved
        """
        ok = True
        for key, value in changes.items():
            if not await self.settings.update(_settings_key(key), value):
                ok = False
        return ok

    # ------------------------------------------------------------------
    # Chat history
    # ------------------------------------------------------------------

    async def add_chat_message(self, session_id: str, message: ChatMessage | Mapping[str, Any] | str) -> ChatMessage:
        await self._ready()
        return await self._chat.add_chat_message(session_id, message)

    async def get_chat_history(self, session_id: str, limit: Optional[int] = None) -> list[ChatMessage]:
        await self._ready()
        return await self._chat.get_chat_history(session_id, limit)

    async def clear_chat_history(self, session_id: str) -> int:
        await self._ready()
        return await self._chat.clear_chat_history(session_id)


def create_memory_provider(
    settings: Optional[SettingsManager] = None,
    llm_service: Optional[LLMService] = None,
    lazy: bool = True,
) -> MemoryProvider:
    """
    Factory function to create a configured MemoryProvider.

    When no LLM service is given and OPENAI_API_KEY is set, an OpenAI
    provider is registered as the default embedding source.

    Args:
        settings: Settings to use (defaults to config.yaml)
        llm_service: LLM registry supplying the default provider
        lazy: Initialize on first use

    Returns:
        MemoryProvider (not yet initialized)
    """
    settings = settings or SettingsManager()
    if llm_service is None:
        llm_service = LLMService()
        embedding_config = settings.embedding_config()
        if embedding_config.openai_api_key:
            llm_service.register(
                create_llm_provider(
                    "openai",
                    openai_api_key=embedding_config.openai_api_key,
                    embedding_model=embedding_config.openai_model,
                    dimensions=embedding_config.dimensions,
                ),
                name="openai",
            )
    return MemoryProvider(settings=settings, llm_service=llm_service, lazy=lazy)

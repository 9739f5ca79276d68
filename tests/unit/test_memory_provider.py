"""
Unit tests for memstore/memory/memory_provider.py

Runs the provider against SQLite, the in-memory vector store and
deterministic hashing embeddings.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from memstore.llm import LLMService
from memstore.memory import (
    ChatMessage,
    InitializationError,
    MemoryFilter,
    MemoryProvider,
    MemorySearchOptions,
    MemoryState,
    MessageType,
    NotInitializedError,
    QueryError,
    create_database,
    create_memory_provider,
    create_vector_store,
)
from memstore.memory.in_memory_store import InMemoryVectorStore

from tests.fixtures import FailingVectorStore, make_settings


def _provider(settings, embeddings, vector_store=None, calls=None, **kwargs) -> MemoryProvider:
    """Provider whose factories record what they build."""
    calls = calls if calls is not None else {}

    def database_factory(kind, settings):
        calls.setdefault("database", []).append(kind)
        return create_database(kind, settings)

    def vector_store_factory(kind, settings, dimension):
        calls.setdefault("vector_store", []).append(dimension)
        if vector_store is not None:
            return vector_store
        return create_vector_store(kind, settings, dimension)

    return MemoryProvider(
        settings,
        database_factory=database_factory,
        vector_store_factory=vector_store_factory,
        embedding_factory=lambda llm, config: embeddings,
        **kwargs,
    )


class TestMemoryProviderLifecycle:
    """Tests for initialization and settings handling."""

    @pytest.mark.asyncio
    async def test_lazy_initialization(self, provider):
        """Test that the first operation initializes the backends."""
        assert provider.state == MemoryState.UNINITIALIZED

        await provider.get_memories()

        assert provider.state == MemoryState.INITIALIZED
        assert isinstance(provider.vector_store, InMemoryVectorStore)
        assert provider.vector_store.dimension == 256

    @pytest.mark.asyncio
    async def test_concurrent_initialize_runs_once(self, settings, embeddings):
        """Test that concurrent callers share a single initialization."""
        calls = {}
        memory = _provider(settings, embeddings, calls=calls)
        try:
            await asyncio.gather(*(memory.initialize() for _ in range(5)))
            await asyncio.gather(*(memory.get_memories() for _ in range(5)))

            assert calls["database"] == ["sqlite"]
            assert len(calls["vector_store"]) == 1
        finally:
            await memory.close()

    @pytest.mark.asyncio
    async def test_eager_mode_requires_initialize(self, settings, embeddings):
        """Test that lazy=False refuses operations before initialize()."""
        memory = _provider(settings, embeddings, lazy=False)
        try:
            with pytest.raises(NotInitializedError):
                await memory.get_memories()

            await memory.initialize()
            assert await memory.get_memories() == []
        finally:
            await memory.close()

    @pytest.mark.asyncio
    async def test_disabled_memory(self, tmp_path, embeddings):
        """Test that memory.enabled: false fails initialization."""
        memory = _provider(make_settings(tmp_path, enabled=False), embeddings)

        with pytest.raises(InitializationError, match="disabled"):
            await memory.initialize()
        assert memory.state == MemoryState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_failed_initialize_closes_database(self, settings, embeddings):
        """Test that a vector store failure closes the already-open database."""
        database = MagicMock()
        database.initialize = AsyncMock()
        database.close = AsyncMock()

        def broken_vector_store(kind, settings, dimension):
            raise ConnectionError("no vector store")

        memory = MemoryProvider(
            settings,
            database_factory=lambda kind, settings: database,
            vector_store_factory=broken_vector_store,
            embedding_factory=lambda llm, config: embeddings,
        )

        with pytest.raises(InitializationError, match="no vector store"):
            await memory.initialize()

        database.close.assert_awaited_once()
        assert memory.state == MemoryState.UNINITIALIZED
        assert memory.database is None

    @pytest.mark.asyncio
    async def test_retry_after_failed_initialize(self, settings, embeddings):
        """Test that a failed initialization can be retried."""
        attempts = []

        def flaky_vector_store(kind, settings, dimension):
            attempts.append(kind)
            if len(attempts) == 1:
                raise ConnectionError("not yet")
            return InMemoryVectorStore(dimension)

        memory = MemoryProvider(
            settings,
            vector_store_factory=flaky_vector_store,
            embedding_factory=lambda llm, config: embeddings,
        )
        try:
            with pytest.raises(InitializationError):
                await memory.initialize()
            await memory.initialize()
            assert memory.state == MemoryState.INITIALIZED
        finally:
            await memory.close()

    @pytest.mark.asyncio
    async def test_backend_change_reinitializes(self, settings, embeddings):
        """Test that changing the active backend reconnects on next use."""
        calls = {}
        memory = _provider(settings, embeddings, calls=calls)
        try:
            await memory.initialize()
            old_database = memory.database

            assert await memory.update_memory_settings({"vector_store": "memory"}) is True
            assert memory.state == MemoryState.UNINITIALIZED

            await memory.get_memories()
            assert memory.state == MemoryState.INITIALIZED
            assert memory.database is not old_database
            assert len(calls["database"]) == 2
            # The replaced connection was closed
            assert old_database._db is None
        finally:
            await memory.close()

    @pytest.mark.asyncio
    async def test_active_backend_section_reinitializes(self, settings, embeddings, tmp_path):
        """Test that editing the active backend's own settings reconnects."""
        memory = _provider(settings, embeddings)
        try:
            await memory.initialize()
            await memory.update_memory_settings({"databases.sqlite.filename": str(tmp_path / "other.db")})
            assert memory.state == MemoryState.UNINITIALIZED
        finally:
            await memory.close()

    @pytest.mark.asyncio
    async def test_backend_keys_under_kind_map_to_sections(self, settings, embeddings, tmp_path):
        """Test that memory.database.<kind>.* keys land in databases.<kind>."""
        memory = _provider(settings, embeddings)
        try:
            await memory.initialize()
            other = str(tmp_path / "other.db")

            assert await memory.update_memory_settings({
                "memory.database.sqlite.filename": other,
                "memory.vector_store.chroma.collection_name": "renamed",
            }) is True

            assert settings.get("memory.database") == "sqlite"
            assert settings.get("databases.sqlite.filename") == other
            assert settings.get("vector_stores.chroma.collection_name") == "renamed"
            assert memory.state == MemoryState.UNINITIALIZED

            await memory.get_memories()
            assert memory.database.filename == other
        finally:
            await memory.close()

    @pytest.mark.asyncio
    async def test_settings_change_during_initialize(self, settings, embeddings, tmp_path):
        """Test that a change arriving mid-initialization is not lost."""
        built = []

        def database_factory(kind, settings):
            database = create_database(kind, settings)
            built.append(database)
            if len(built) == 1:
                initialize = database.initialize

                async def initialize_then_change():
                    await initialize()
                    await settings.update("databases.sqlite.filename", str(tmp_path / "other.db"))

                database.initialize = initialize_then_change
            return database

        memory = MemoryProvider(
            settings,
            database_factory=database_factory,
            embedding_factory=lambda llm, config: embeddings,
        )
        try:
            await memory.get_memories()

            assert memory.state == MemoryState.INITIALIZED
            assert len(built) == 2
            assert memory.database is built[1]
            assert memory.database.filename == str(tmp_path / "other.db")
        finally:
            await memory.close()

    @pytest.mark.asyncio
    async def test_unrelated_settings_do_not_reinitialize(self, settings, embeddings):
        """Test that inactive backends and plain limits do not reconnect."""
        memory = _provider(settings, embeddings)
        try:
            await memory.initialize()
            await memory.update_memory_settings({"databases.postgres.schema": "other"})
            await memory.update_memory_settings({"max_memories": 2})

            assert memory.state == MemoryState.INITIALIZED
            assert memory.get_memory_settings().max_memories == 2
        finally:
            await memory.close()

    @pytest.mark.asyncio
    async def test_limit_setting_applies_immediately(self, settings, embeddings):
        """Test that max_memories changes apply without reconnecting."""
        memory = _provider(settings, embeddings)
        try:
            for i in range(3):
                await memory.add_memory(f"memory {i}")
            await memory.update_memory_settings({"max_memories": 2})

            assert len(await memory.get_memories()) == 2
        finally:
            await memory.close()


class TestMemoryProviderWrites:
    """Tests for adding, deleting and clearing memories."""

    @pytest.mark.asyncio
    async def test_add_and_get_round_trip(self, provider):
        """Test that a stored memory reads back with its metadata and embedding."""
        entry = await provider.add_memory("Remember the milk", {"source": "user", "tags": ["todo"]})

        assert entry.id.startswith("mem_")
        stored = await provider.get_memory(entry.id)
        assert stored.content == "Remember the milk"
        assert stored.metadata == {"source": "user", "tags": ["todo"]}
        assert stored.embedding == entry.embedding
        assert stored.timestamp == entry.timestamp
        assert await provider.vector_store.get_vector(entry.id) is not None

    @pytest.mark.asyncio
    async def test_structured_content(self, provider):
        """Test that dict content is stored and embedded as text."""
        entry = await provider.add_memory({"task": "deploy", "env": "prod"})

        stored = await provider.get_memory(entry.id)
        assert stored.content == {"task": "deploy", "env": "prod"}

    @pytest.mark.asyncio
    async def test_empty_content_rejected(self, provider):
        """Test that empty content is a ValueError."""
        with pytest.raises(ValueError):
            await provider.add_memory("   ")
        with pytest.raises(ValueError):
            await provider.add_memory({})

    @pytest.mark.asyncio
    async def test_relevance_not_persisted(self, provider):
        """Test that a caller-supplied relevance key is not stored."""
        entry = await provider.add_memory("text", {"relevance": 0.9})
        assert "relevance" not in (await provider.get_memory(entry.id)).metadata

    @pytest.mark.asyncio
    async def test_vector_failure_removes_database_record(self, settings, embeddings):
        """Test that a failed vector write leaves nothing behind."""
        memory = _provider(settings, embeddings, vector_store=FailingVectorStore(fail_add=True))
        try:
            with pytest.raises(QueryError, match="index"):
                await memory.add_memory("will not stick")

            assert await memory.get_memories() == []
        finally:
            await memory.close()

    @pytest.mark.asyncio
    async def test_embedding_failure(self, settings):
        """Test that an embedding error is a QueryError and stores nothing."""
        embeddings = MagicMock()
        embeddings.dimension = 3
        embeddings.embed_query = AsyncMock(side_effect=ConnectionError("rate limited"))
        memory = _provider(settings, embeddings)
        try:
            with pytest.raises(QueryError, match="embed"):
                await memory.add_memory("x")
            assert await memory.get_memories() == []
        finally:
            await memory.close()

    @pytest.mark.asyncio
    async def test_delete_memory(self, provider):
        """Test that delete removes from both stores and tolerates missing ids."""
        entry = await provider.add_memory("short lived")

        assert await provider.delete_memory(entry.id) is True
        assert await provider.get_memory(entry.id) is None
        assert await provider.vector_store.get_vector(entry.id) is None
        assert await provider.delete_memory(entry.id) is True
        assert await provider.delete_memory("mem_missing") is True

    @pytest.mark.asyncio
    async def test_clear_memories_empties_both_stores(self, provider):
        """Test that nothing is findable after clear."""
        for text in ("one", "two", "three"):
            await provider.add_memory(text, {"tags": ["t"]})
        await provider.add_chat_message("s1", "keep me")

        await provider.clear_memories()

        assert await provider.get_memories() == []
        assert await provider.vector_store.count() == 0
        assert await provider.search_memories({"filter": {"tags": ["t"]}}) == []
        assert await provider.search_similar_memories("one", relevance_threshold=0.0) == []
        assert len(await provider.get_chat_history("s1")) == 1

    @pytest.mark.asyncio
    async def test_clear_attempts_both_stores(self, settings, embeddings):
        """Test that a vector store failure still clears the database."""
        store = FailingVectorStore()
        store.clear_vectors = AsyncMock(side_effect=ConnectionError("down"))
        memory = _provider(settings, embeddings, vector_store=store)
        try:
            await memory.add_memory("x")
            with pytest.raises(QueryError):
                await memory.clear_memories()
            assert await memory.get_memories() == []
        finally:
            await memory.close()

    @pytest.mark.asyncio
    async def test_change_listeners(self, provider):
        """Test that listeners hear add, delete and clear."""
        events = []
        remove = provider.add_change_listener(lambda event, id: events.append((event, id)))

        entry = await provider.add_memory("x")
        await provider.delete_memory(entry.id)
        await provider.clear_memories()
        remove()
        await provider.add_memory("y")

        assert events == [("add", entry.id), ("delete", entry.id), ("clear", None)]


class TestMemoryProviderSearch:
    """Tests for structured and similarity search."""

    @pytest.mark.asyncio
    async def test_get_memories_newest_first(self, provider):
        """Test that get_memories lists newest first with a limit."""
        first = await provider.add_memory("first")
        await asyncio.sleep(0.002)
        second = await provider.add_memory("second")

        memories = await provider.get_memories()
        assert [m.id for m in memories] == [second.id, first.id]
        assert len(await provider.get_memories(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_search_memories_tags_and(self, provider):
        """Test that a tag filter returns only memories with every tag."""
        both = await provider.add_memory("both", {"tags": ["a", "b"]})
        await provider.add_memory("only a", {"tags": ["a"]})
        await provider.add_memory("only b", {"tags": ["b"]})

        results = await provider.search_memories(filter={"tags": ["a", "b"]})
        assert [m.id for m in results] == [both.id]

    @pytest.mark.asyncio
    async def test_search_memories_text_and_source(self, provider):
        """Test text search combined with a source filter."""
        match = await provider.add_memory("Deploy the API server", {"source": "ops"})
        await provider.add_memory("Deploy the website", {"source": "web"})
        await provider.add_memory("Feed the cat", {"source": "ops"})

        results = await provider.search_memories(
            MemorySearchOptions(query="deploy", filter=MemoryFilter(source="ops"))
        )
        assert [m.id for m in results] == [match.id]

    @pytest.mark.asyncio
    async def test_search_memories_default_limit(self, provider):
        """Test that structured search returns ten results unless told otherwise."""
        for i in range(12):
            await provider.add_memory(f"note {i}")

        assert len(await provider.search_memories()) == 10
        assert len(await provider.search_memories(limit=12)) == 12
        assert len(await provider.get_memories()) == 12

    @pytest.mark.asyncio
    async def test_search_memories_time_range(self, provider):
        """Test timestamp filtering with camelCase keys."""
        entry = await provider.add_memory("timed")

        inside = await provider.search_memories(
            filter={"fromTimestamp": entry.timestamp, "toTimestamp": entry.timestamp}
        )
        after = await provider.search_memories(filter={"fromTimestamp": entry.timestamp + 1})

        assert [m.id for m in inside] == [entry.id]
        assert after == []

    @pytest.mark.asyncio
    async def test_similar_exact_match(self, provider):
        """Test that identical text is found with relevance close to 1."""
        entry = await provider.add_memory("alpha beta gamma")
        await provider.add_memory("completely unrelated words here")

        results = await provider.search_similar_memories("alpha beta gamma")

        assert results[0].id == entry.id
        assert results[0].relevance == pytest.approx(1.0, abs=1e-4)
        assert results[0].metadata["relevance"] == results[0].relevance

    @pytest.mark.asyncio
    async def test_similar_threshold_monotonic(self, provider):
        """Test that raising the threshold never adds results."""
        for text in ("red apple", "red apple pie", "green apple", "blue sky", "red car"):
            await provider.add_memory(text)

        previous = None
        for threshold in (-1.0, 0.0, 0.3, 0.5, 0.7, 0.9, 1.01):
            ids = {m.id for m in await provider.search_similar_memories(
                "red apple", limit=10, relevance_threshold=threshold
            )}
            if previous is None:
                assert len(ids) == 5
            else:
                assert ids <= previous
            previous = ids

        assert previous == set()

    @pytest.mark.asyncio
    async def test_similar_results_sorted_and_limited(self, provider):
        """Test that results are ordered by relevance and respect the limit."""
        for text in ("red apple", "red apple pie", "green apple", "red car"):
            await provider.add_memory(text)

        results = await provider.search_similar_memories("red apple", limit=3, relevance_threshold=0.0)

        assert len(results) == 3
        scores = [m.relevance for m in results]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_similar_with_tag_filter(self, provider):
        """Test that similarity search honors tag filters."""
        tagged = await provider.add_memory("red apple", {"tags": ["fruit", "red"]})
        await provider.add_memory("red apple", {"tags": ["fruit"]})

        results = await provider.search_similar_memories(
            "red apple", {"filter": {"tags": ["fruit", "red"]}, "relevanceThreshold": 0.5}
        )
        assert [m.id for m in results] == [tagged.id]

    @pytest.mark.asyncio
    async def test_similar_tag_filter_beyond_indexed_tags(self, provider):
        """Test that tags past the vector index cap still match."""
        many = await provider.add_memory("red apple pie", {"tags": [f"t{i}" for i in range(25)]})
        for text in ("red apple", "red apple tart", "green apple"):
            await provider.add_memory(text, {"tags": ["fruit"]})

        results = await provider.search_similar_memories(
            "red apple pie", filter=MemoryFilter(tags=["t24"]), relevance_threshold=-1, limit=1
        )
        assert [m.id for m in results] == [many.id]

        fruit = await provider.search_similar_memories(
            "red apple", filter=MemoryFilter(tags=["fruit"]), relevance_threshold=-1, limit=2
        )
        assert len(fruit) == 2
        assert many.id not in {m.id for m in fruit}

    @pytest.mark.asyncio
    async def test_similar_post_filters_timestamps(self, provider):
        """Test that conditions the vector index lacks are applied afterwards."""
        entry = await provider.add_memory("red apple")

        results = await provider.search_similar_memories(
            "red apple", filter=MemoryFilter(from_timestamp=entry.timestamp + 1), relevance_threshold=0.0
        )
        assert results == []

    @pytest.mark.asyncio
    async def test_similar_falls_back_to_text_search(self, settings, embeddings):
        """Test that a vector search failure falls back to structured search."""
        memory = _provider(settings, embeddings, vector_store=FailingVectorStore(fail_search=True))
        try:
            entry = await memory.add_memory("The quick brown fox")
            await memory.add_memory("Something else")

            results = await memory.search_similar_memories("brown fox")
            assert [m.id for m in results] == [entry.id]
        finally:
            await memory.close()

    @pytest.mark.asyncio
    async def test_fox_scenario(self, provider):
        """Test the end-to-end remember-and-recall flow."""
        fox = await provider.add_memory(
            "The quick brown fox jumps over the lazy dog", {"source": "user", "tags": ["animals"]}
        )
        await provider.add_memory("Quarterly revenue grew by ten percent", {"source": "report", "tags": ["finance"]})

        results = await provider.search_similar_memories("quick brown fox", relevance_threshold=0.3)
        assert results[0].id == fox.id
        assert results[0].relevance >= 0.3

        by_tag = await provider.search_memories(filter={"tags": ["animals"]})
        assert [m.id for m in by_tag] == [fox.id]

        assert await provider.delete_memory(fox.id) is True
        assert all(m.id != fox.id for m in await provider.search_similar_memories("quick brown fox", relevance_threshold=0.0))


class TestMemoryProviderChat:
    """Tests for chat history through the provider."""

    @pytest.mark.asyncio
    async def test_chat_round_trip(self, provider):
        """Test add, read and clear through the provider."""
        await provider.add_chat_message("s1", "hello")
        await provider.add_chat_message("s1", ChatMessage(content="hi", type=MessageType.AI))

        history = await provider.get_chat_history("s1")
        assert [m.content for m in history] == ["hello", "hi"]

        assert await provider.clear_chat_history("s1") == 2
        assert await provider.get_chat_history("s1") == []

    @pytest.mark.asyncio
    async def test_history_size_setting(self, tmp_path, embeddings):
        """Test that conversation_history_size is the default limit."""
        memory = _provider(make_settings(tmp_path, conversation_history_size=2), embeddings)
        try:
            for i in range(4):
                await memory.add_chat_message("s1", f"m{i}")
            assert [m.content for m in await memory.get_chat_history("s1")] == ["m2", "m3"]
        finally:
            await memory.close()


class TestCreateMemoryProvider:
    """Tests for create_memory_provider."""

    def test_registers_openai_when_key_set(self, settings, monkeypatch):
        """Test that OPENAI_API_KEY registers an OpenAI provider."""
        monkeypatch.setenv("OPENAI_API_KEY", "test-key")

        memory = create_memory_provider(settings)

        assert memory.llm_service.names == ["openai"]
        assert memory.llm_service.get_default_provider().provider_name == "OpenAI"
        assert memory.llm_service.get_default_provider().embedding_model == settings.embedding_config().openai_model

    def test_no_key_no_provider(self, settings):
        """Test that no key means an empty registry."""
        memory = create_memory_provider(settings)
        assert memory.llm_service.names == []

    def test_uses_given_service(self, settings):
        """Test that an explicit LLMService is used as-is."""
        service = LLMService()
        assert create_memory_provider(settings, llm_service=service).llm_service is service

    @pytest.mark.asyncio
    async def test_no_embedding_source_fails_initialize(self, settings):
        """Test that initialization fails cleanly without any embedding source."""
        memory = create_memory_provider(settings)

        with pytest.raises(InitializationError):
            await memory.initialize()
        assert memory.state == MemoryState.UNINITIALIZED

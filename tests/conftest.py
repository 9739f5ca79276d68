"""
Shared pytest fixtures for memstore tests.

This module provides:
- Settings backed by a temporary config.yaml
- SQLite and (fake) Redis databases
- Deterministic embeddings and a ready-to-use MemoryProvider
- Mock external services (OpenAI)
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

from tests.fixtures import HashingEmbeddingService, make_settings


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clear_secret_env(monkeypatch):
    """Keep developer .env secrets out of the tests."""
    for name in ("OPENAI_API_KEY", "POSTGRES_URL", "MYSQL_PASSWORD", "MONGODB_URL", "REDIS_URL", "PGVECTOR_URL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path):
    """SettingsManager using SQLite and the in-memory vector store under tmp_path."""
    return make_settings(tmp_path)


@pytest.fixture
def embeddings() -> HashingEmbeddingService:
    """Deterministic bag-of-words embedding service."""
    return HashingEmbeddingService()


@pytest.fixture
def sample_config_yaml(tmp_path):
    """Create a sample config.yaml file."""
    config_path = tmp_path / "config.yaml"
    config_content = """
memory:
  enabled: true
  vector_store: chroma
  database: postgres
  max_memories: 250
  relevance_threshold: 0.5

embeddings:
  provider: openai
  openai_model: text-embedding-3-large
  dimensions: 1024

databases:
  postgres:
    connection_string: postgresql://localhost/memstore
    schema: agent

vector_stores:
  chroma:
    directory: ./data/chroma

logging:
  level: DEBUG
"""
    config_path.write_text(config_content)
    return config_path


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def sqlite_db(tmp_path):
    """Initialized SQLiteDatabase in a temporary file."""
    from memstore.memory.databases import SQLiteDatabase

    db = SQLiteDatabase(filename=str(tmp_path / "test.db"))
    await db.initialize()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def redis_db():
    """Initialized RedisDatabase on top of fakeredis."""
    from fakeredis import FakeAsyncRedis

    from memstore.memory.databases import RedisDatabase

    client = FakeAsyncRedis(decode_responses=True)
    db = RedisDatabase(key_prefix="test:", client=client)
    await db.initialize()
    yield db
    await db.close()
    await client.aclose()


# =============================================================================
# Memory Provider Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def provider(settings, embeddings):
    """MemoryProvider wired to SQLite, the in-memory vector store and hashing embeddings."""
    from memstore.memory import MemoryProvider

    memory = MemoryProvider(settings, embedding_factory=lambda llm, config: embeddings)
    yield memory
    await memory.close()


# =============================================================================
# Mock External Services
# =============================================================================


@pytest.fixture
def mock_openai():
    """Mock AsyncOpenAI for OpenAI API tests."""
    # Patch at the module where it's imported, not where it's defined
    with patch("memstore.llm.openai_client.AsyncOpenAI") as mock_client_class:
        mock_client = MagicMock()

        mock_item = MagicMock()
        mock_item.embedding = [0.1, 0.2, 0.3]
        mock_item.index = 0

        mock_response = MagicMock()
        mock_response.data = [mock_item]
        mock_response.model = "text-embedding-3-small"

        mock_client.embeddings.create = AsyncMock(return_value=mock_response)
        mock_client_class.return_value = mock_client
        yield mock_client_class


@pytest.fixture
def mock_env_vars(monkeypatch):
    """Set mock environment variables for testing."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-openai-key")
    monkeypatch.setenv("POSTGRES_URL", "postgresql://env-host/memstore")
    monkeypatch.setenv("REDIS_URL", "redis://env-host:6379/0")

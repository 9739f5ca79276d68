"""
Configuration module for memstore.

Loads settings from config.yaml and secrets from environment variables.
SettingsManager owns the YAML document at runtime: it hands out typed
dataclass views, persists updates and notifies listeners.
"""

import copy
import inspect
import logging
import os
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Callable, ClassVar, Optional

import yaml
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger("memstore.config")

# Default config file path; MEMSTORE_CONFIG points elsewhere
CONFIG_FILE = Path(os.getenv("MEMSTORE_CONFIG", "config.yaml"))

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class DatabaseKind(str, Enum):
    SQLITE = "sqlite"
    POSTGRES = "postgres"
    MYSQL = "mysql"
    MONGODB = "mongodb"
    REDIS = "redis"


class VectorStoreKind(str, Enum):
    MEMORY = "memory"
    CHROMA = "chroma"
    PGVECTOR = "pgvector"


def _load_yaml_config(path: Path) -> dict:
    """Load configuration from YAML file."""
    if path.exists():
        with open(path) as f:
            return yaml.safe_load(f) or {}
    return {}


def _from_section(cls, section: Optional[dict]):
    """
    Build a config dataclass from a YAML section.

    Unknown keys are ignored. Fields listed in the class's ``ENV`` map are
    overridden by the named environment variable when it is set.
    """
    section = section or {}
    known = {f.name for f in fields(cls)}
    values = {k: v for k, v in section.items() if k in known and v is not None}
    for name, env_var in getattr(cls, "ENV", {}).items():
        env_value = os.getenv(env_var)
        if env_value:
            values[name] = env_value
    return cls(**values)


@dataclass
class MemorySettings:
    """Memory system settings (``memory`` section)."""
    enabled: bool = True
    vector_store: str = VectorStoreKind.CHROMA.value
    database: str = DatabaseKind.SQLITE.value
    max_memories: int = 1000
    relevance_threshold: float = 0.7
    context_window_size: int = 5
    conversation_history_size: int = 100


@dataclass
class EmbeddingConfig:
    """Embedding pipeline settings (``embeddings`` section)."""
    ENV: ClassVar[dict[str, str]] = {"openai_api_key": "OPENAI_API_KEY"}

    provider: str = "auto"  # auto | openai | local
    openai_model: str = "text-embedding-3-small"
    # None = use model's default dimensions
    dimensions: Optional[int] = None
    local_model: str = "all-MiniLM-L6-v2"
    max_concurrency: int = 4
    max_retries: int = 3
    # Secret from .env
    openai_api_key: str = ""


@dataclass
class SQLiteConfig:
    filename: str = "./.memstore/memory.db"


@dataclass
class PostgresConfig:
    ENV: ClassVar[dict[str, str]] = {"connection_string": "POSTGRES_URL"}

    connection_string: str = ""
    schema: str = "codessa"


@dataclass
class MySQLConfig:
    ENV: ClassVar[dict[str, str]] = {"password": "MYSQL_PASSWORD"}

    host: str = "localhost"
    port: int = 3306
    user: str = "root"
    password: str = ""
    database: str = "codessa"
    table: str = "memories"


@dataclass
class MongoDBConfig:
    ENV: ClassVar[dict[str, str]] = {"connection_string": "MONGODB_URL"}

    connection_string: str = ""
    database: str = "codessa"


@dataclass
class RedisConfig:
    ENV: ClassVar[dict[str, str]] = {"url": "REDIS_URL"}

    url: str = ""
    key_prefix: str = "codessa:"


@dataclass
class ChromaConfig:
    directory: str = "./.memstore/chroma"
    collection_name: str = "codessa_memories"


@dataclass
class PgVectorConfig:
    ENV: ClassVar[dict[str, str]] = {"connection_string": "PGVECTOR_URL"}

    connection_string: str = ""
    table_name: str = "memory_vectors"
    # None = untyped vector column, no HNSW index
    dimension: Optional[int] = None


DATABASE_CONFIGS = {
    DatabaseKind.SQLITE: SQLiteConfig,
    DatabaseKind.POSTGRES: PostgresConfig,
    DatabaseKind.MYSQL: MySQLConfig,
    DatabaseKind.MONGODB: MongoDBConfig,
    DatabaseKind.REDIS: RedisConfig,
}

VECTOR_STORE_CONFIGS = {
    VectorStoreKind.CHROMA: ChromaConfig,
    VectorStoreKind.PGVECTOR: PgVectorConfig,
}

SettingsListener = Callable[[str, Any], Any]


class SettingsManager:
    """
    YAML-backed settings with change notification.

    Args:
        path: config.yaml location (defaults to CONFIG_FILE)
        data: Initial settings, used instead of reading the file
    """

    def __init__(self, path: Optional[Path | str] = None, data: Optional[dict] = None):
        self.path = Path(path) if path is not None else CONFIG_FILE
        self._data: dict = copy.deepcopy(data) if data is not None else _load_yaml_config(self.path)
        self._listeners: list[SettingsListener] = []

    def reload(self) -> None:
        """Re-read the YAML file."""
        self._data = _load_yaml_config(self.path)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dotted key, e.g. ``memory.database``."""
        current: Any = self._data
        for part in key.split("."):
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]
        return current

    def section(self, key: str) -> dict:
        value = self.get(key, {})
        return value if isinstance(value, dict) else {}

    async def update(self, key: str, value: Any) -> bool:
        """
        Set a dotted key, persist the YAML file and notify listeners.

        Returns:
            False if the file could not be written or a parent of the key
            holds a plain value; the in-memory settings are left unchanged
            in that case.
        """
        updated = copy.deepcopy(self._data)
        parts = key.split(".")
        target = updated
        for i, part in enumerate(parts[:-1]):
            if target.get(part) is None:
                target[part] = {}
            elif not isinstance(target[part], dict):
                parent = ".".join(parts[: i + 1])
                logger.error(f"Cannot set {key}: {parent} is not a section")
                return False
            target = target[part]
        target[parts[-1]] = value

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                yaml.safe_dump(updated, f, sort_keys=False)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to save setting {key}: {e}")
            return False

        self._data = updated
        logger.info(f"Setting updated: {key}")
        await self._notify(key, value)
        return True

    def add_listener(self, callback: SettingsListener) -> Callable[[], None]:
        """
        Register a callback ``(key, value)``; it may be sync or async.

        Returns:
            A function that removes the listener again
        """
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    async def _notify(self, key: str, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(key, value)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Settings listener failed for {key}: {e}")

    @property
    def log_level(self) -> str:
        return str(self.get("logging.level", "INFO"))

    def memory_settings(self) -> MemorySettings:
        return _from_section(MemorySettings, self.section("memory"))

    def embedding_config(self) -> EmbeddingConfig:
        return _from_section(EmbeddingConfig, self.section("embeddings"))

    def database_config(self, kind: DatabaseKind | str):
        """Typed settings for a database backend (``databases.<kind>``)."""
        kind = DatabaseKind(kind)
        return _from_section(DATABASE_CONFIGS[kind], self.section(f"databases.{kind.value}"))

    def vector_store_config(self, kind: VectorStoreKind | str):
        """Typed settings for a vector store backend, or None if it takes none."""
        kind = VectorStoreKind(kind)
        config_cls = VECTOR_STORE_CONFIGS.get(kind)
        if config_cls is None:
            return None
        return _from_section(config_cls, self.section(f"vector_stores.{kind.value}"))


@dataclass
class Config:
    """Main configuration container."""
    settings: SettingsManager = field(default_factory=SettingsManager)

    @property
    def memory(self) -> MemorySettings:
        return self.settings.memory_settings()

    @property
    def embeddings(self) -> EmbeddingConfig:
        return self.settings.embedding_config()

    def setup_logging(self) -> logging.Logger:
        """Configure and return the application logger."""
        # Reset existing handlers to ensure clean configuration
        root = logging.getLogger()
        if root.handlers:
            for handler in list(root.handlers):
                root.removeHandler(handler)

        logging.basicConfig(
            level=getattr(logging, self.settings.log_level.upper(), logging.INFO),
            format=LOG_FORMAT,
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        return logging.getLogger("memstore")

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of missing/invalid settings.

        Returns:
            List of validation error messages, empty if all valid.
        """
        errors = []

        if not self.settings.path.exists():
            errors.append(
                f"Config file not found: {self.settings.path} (copy config.yaml.example to config.yaml)"
            )

        memory = self.memory
        if memory.database not in {k.value for k in DatabaseKind}:
            errors.append(f"memory.database must be one of {[k.value for k in DatabaseKind]}")
        elif memory.database == DatabaseKind.POSTGRES.value:
            if not self.settings.database_config(DatabaseKind.POSTGRES).connection_string:
                errors.append("databases.postgres.connection_string or POSTGRES_URL is required")
        elif memory.database == DatabaseKind.MONGODB.value:
            if not self.settings.database_config(DatabaseKind.MONGODB).connection_string:
                errors.append("databases.mongodb.connection_string or MONGODB_URL is required")
        elif memory.database == DatabaseKind.REDIS.value:
            if not self.settings.database_config(DatabaseKind.REDIS).url:
                errors.append("databases.redis.url or REDIS_URL is required")

        if memory.vector_store not in {k.value for k in VectorStoreKind}:
            errors.append(f"memory.vector_store must be one of {[k.value for k in VectorStoreKind]}")
        elif memory.vector_store == VectorStoreKind.PGVECTOR.value:
            if not self.settings.vector_store_config(VectorStoreKind.PGVECTOR).connection_string:
                errors.append("vector_stores.pgvector.connection_string or PGVECTOR_URL is required")

        if not 0 <= memory.relevance_threshold <= 1:
            errors.append("memory.relevance_threshold must be between 0 and 1")

        embeddings = self.embeddings
        if embeddings.provider not in ("auto", "openai", "local"):
            errors.append("embeddings.provider must be one of auto, openai, local")
        elif embeddings.provider == "openai" and not embeddings.openai_api_key:
            errors.append("OPENAI_API_KEY is required when embeddings.provider is openai")

        return errors

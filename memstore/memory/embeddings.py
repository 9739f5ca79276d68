"""
Embedding Service for generating vector representations.

Embeddings come from the active LLM provider when it has an embedding
capability, from OpenAI directly when an API key is configured, or from
a local sentence-transformers model when asked for explicitly.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from ..config import EmbeddingConfig
from .errors import EmbeddingUnavailableError

logger = logging.getLogger("memstore.memory.embeddings")


class AsyncCaller:
    """
    Runs coroutine calls with bounded concurrency and retries.

    Args:
        max_concurrency: Calls allowed in flight at once
        max_retries: Retries after the first attempt
        base_delay: First backoff delay in seconds, doubled per retry
        max_delay: Backoff ceiling in seconds
        non_retryable: Exception types raised immediately
    """

    def __init__(
        self,
        max_concurrency: int = 4,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        non_retryable: tuple[type[BaseException], ...] = (ValueError, TypeError, NotImplementedError),
    ):
        self.max_concurrency = max(1, max_concurrency)
        self.max_retries = max(0, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.non_retryable = non_retryable
        self._semaphore = asyncio.Semaphore(self.max_concurrency)

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        attempt = 0
        while True:
            async with self._semaphore:
                try:
                    return await func(*args, **kwargs)
                except self.non_retryable:
                    raise
                except Exception as e:
                    if attempt >= self.max_retries:
                        raise
                    delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                    logger.warning(
                        f"Embedding call failed (attempt {attempt + 1}/{self.max_retries + 1}): {e}. "
                        f"Retrying in {delay:.1f}s"
                    )
            # Sleep outside the semaphore so other calls can proceed
            await asyncio.sleep(delay)
            attempt += 1


def _as_vector(value: Any) -> list[float]:
    """Validate an embedding returned by a provider."""
    if hasattr(value, "tolist"):
        value = value.tolist()
    if not isinstance(value, (list, tuple)) or not value:
        raise ValueError("Embedding must be a non-empty list of numbers")
    try:
        return [float(x) for x in value]
    except (TypeError, ValueError):
        raise ValueError("Embedding must be a non-empty list of numbers")


class EmbeddingService(ABC):
    """Abstract interface for embedding generation."""

    @property
    @abstractmethod
    def dimension(self) -> Optional[int]:
        """Dimension of produced embeddings, or None until the first one is seen."""
        pass

    @abstractmethod
    async def embed_query(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        pass

    @abstractmethod
    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts, in input order."""
        pass


class ProviderEmbeddingService(EmbeddingService):
    """
    Wraps a per-text ``generate_embedding`` callback.

    Batches fan out through an AsyncCaller, so concurrency stays bounded
    and transient failures are retried.
    """

    def __init__(
        self,
        generate_embedding: Callable[[str], Awaitable[list[float]]],
        caller: Optional[AsyncCaller] = None,
        name: str = "provider",
    ):
        self._generate = generate_embedding
        self._caller = caller or AsyncCaller()
        self._dimension: Optional[int] = None
        self.name = name
        logger.info(f"ProviderEmbeddingService initialized using {name}")

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    async def _embed_one(self, text: str) -> list[float]:
        vector = _as_vector(await self._caller.call(self._generate, text))
        if self._dimension is None:
            self._dimension = len(vector)
        return vector

    async def embed_query(self, text: str) -> list[float]:
        return await self._embed_one(text)

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return list(await asyncio.gather(*(self._embed_one(t) for t in texts)))


class DelegatingEmbeddingService(EmbeddingService):
    """Adapts a provider's own embeddings object (sync or async methods)."""

    def __init__(self, embeddings: Any, name: str = "provider"):
        self._embeddings = embeddings
        self._dimension: Optional[int] = getattr(embeddings, "dimension", None)
        self.name = name
        logger.info(f"Using embeddings object from {name}")

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    @staticmethod
    async def _resolve(result: Any) -> Any:
        if inspect.isawaitable(result):
            return await result
        return result

    async def embed_query(self, text: str) -> list[float]:
        vector = _as_vector(await self._resolve(self._embeddings.embed_query(text)))
        self._dimension = self._dimension or len(vector)
        return vector

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors = [_as_vector(v) for v in await self._resolve(self._embeddings.embed_documents(texts))]
        if len(vectors) != len(texts):
            raise ValueError(f"Expected {len(texts)} embeddings, got {len(vectors)}")
        if vectors:
            self._dimension = self._dimension or len(vectors[0])
        return vectors


class OpenAIEmbeddingService(EmbeddingService):
    """
    OpenAI embedding service using text-embedding-3 models.

    Supports native dimension reduction via the dimensions parameter.
    This allows using text-embedding-3-large with reduced dimensions
    for better quality while fitting within database limits (e.g., pgvector's 2000 dim limit).

    Models:
    - text-embedding-3-small: default 1536 dimensions
    - text-embedding-3-large: default 3072 dimensions (can be reduced)
    """

    # Default dimensions for each model
    MODEL_DEFAULT_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
    }

    # Inputs per embeddings.create request
    BATCH_SIZE = 256

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int | None = None,
        caller: Optional[AsyncCaller] = None,
    ):
        """
        Initialize OpenAI embedding service.

        Args:
            api_key: OpenAI API key
            model: Model name (text-embedding-3-small or text-embedding-3-large)
            dimensions: Override output dimensions (useful for pgvector's 2000 dim limit).
                        If None, uses model's default dimensions.
            caller: Concurrency/retry policy for API calls
        """
        self.api_key = api_key
        self.model = model
        self._client = None
        self._caller = caller or AsyncCaller()

        default_dim = self.MODEL_DEFAULT_DIMENSIONS.get(model, 1536)
        if dimensions is not None and dimensions > default_dim:
            logger.warning(
                f"Requested dimensions ({dimensions}) exceeds model default ({default_dim}). "
                f"Using {default_dim}."
            )
            dimensions = None
        self._requested_dimensions = dimensions
        self._dimension = dimensions or default_dim

        logger.info(
            f"OpenAIEmbeddingService initialized: model={model}, dimensions={self._dimension}"
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def _create(self, input: str | list[str]) -> list[list[float]]:
        kwargs = {
            "model": self.model,
            "input": input,
        }
        if self._requested_dimensions is not None:
            kwargs["dimensions"] = self._requested_dimensions

        response = await self._get_client().embeddings.create(**kwargs)

        # Sort by index to maintain order
        sorted_data = sorted(response.data, key=lambda x: x.index)
        return [list(item.embedding) for item in sorted_data]

    async def embed_query(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        result = await self._caller.call(self._create, text)
        return result[0]

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts efficiently."""
        if not texts:
            return []

        batches = [texts[i:i + self.BATCH_SIZE] for i in range(0, len(texts), self.BATCH_SIZE)]
        results = await asyncio.gather(*(self._caller.call(self._create, batch) for batch in batches))
        return [vector for batch in results for vector in batch]


class LocalEmbeddingService(EmbeddingService):
    """
    Local embedding service using sentence-transformers.

    Uses all-MiniLM-L6-v2 by default (384 dimensions, fast, good quality).
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = 384  # Default for MiniLM
        logger.info(f"LocalEmbeddingService initialized with model: {model_name}")

    @property
    def dimension(self) -> int:
        return self._dimension

    def _get_model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError:
                raise EmbeddingUnavailableError(
                    "sentence-transformers not installed. "
                    "Install with: pip install 'memstore[local]'"
                )
            self._model = SentenceTransformer(self.model_name)
            self._dimension = self._model.get_sentence_embedding_dimension()
            logger.info(f"Loaded local embedding model: {self.model_name}")
        return self._model

    async def embed_query(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        model = self._get_model()
        embedding = model.encode(text, convert_to_numpy=True)
        return embedding.tolist()

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        if not texts:
            return []

        model = self._get_model()
        embeddings = model.encode(texts, convert_to_numpy=True)
        return embeddings.tolist()


def _provider_label(llm_provider: Any) -> str:
    return getattr(llm_provider, "provider_name", None) or type(llm_provider).__name__


def create_embedding_service(
    llm_provider: Any = None,
    config: Optional[EmbeddingConfig] = None,
) -> EmbeddingService:
    """
    Factory function to pick the embedding source.

    Order of preference:
    1. ``embeddings.provider: local`` -> sentence-transformers
    2. The LLM provider's own embeddings object (``get_embeddings()``)
    3. The LLM provider's ``generate_embedding``
    4. OpenAI directly, when OPENAI_API_KEY is set

    ``embeddings.provider: openai`` skips straight to 4.

    Args:
        llm_provider: The default LLM provider, or None
        config: Embedding settings

    Returns:
        Configured EmbeddingService instance

    Raises:
        EmbeddingUnavailableError: If no source is available
    """
    config = config or EmbeddingConfig()
    caller = AsyncCaller(max_concurrency=config.max_concurrency, max_retries=config.max_retries)

    if config.provider == "local":
        return LocalEmbeddingService(model_name=config.local_model)

    if config.provider != "openai" and llm_provider is not None:
        label = _provider_label(llm_provider)

        embeddings = None
        get_embeddings = getattr(llm_provider, "get_embeddings", None)
        if callable(get_embeddings):
            try:
                embeddings = get_embeddings()
            except Exception as e:
                logger.warning(f"{label} failed to provide embeddings: {e}")
        if embeddings is not None:
            if callable(getattr(embeddings, "embed_query", None)) and callable(
                getattr(embeddings, "embed_documents", None)
            ):
                return DelegatingEmbeddingService(embeddings, name=label)
            logger.warning(f"{label} returned an invalid embeddings object; ignoring it")

        generate = getattr(llm_provider, "generate_embedding", None)
        if callable(generate) and getattr(llm_provider, "supports_embeddings", True):
            return ProviderEmbeddingService(generate, caller=caller, name=label)

    if config.openai_api_key:
        return OpenAIEmbeddingService(
            api_key=config.openai_api_key,
            model=config.openai_model,
            dimensions=config.dimensions,
            caller=caller,
        )

    raise EmbeddingUnavailableError(
        "No embedding capability available: register an LLM provider that supports embeddings, "
        "set OPENAI_API_KEY, or set embeddings.provider to local"
    )

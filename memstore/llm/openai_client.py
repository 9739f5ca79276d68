"""
OpenAI LLM Provider Implementation.

Provides the embedding capability through OpenAI's embeddings API.
"""

import logging
from typing import Optional

from openai import AsyncOpenAI

from .base import LLMProvider

logger = logging.getLogger("memstore.llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI API provider implementation."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        embedding_model: str = "text-embedding-3-small",
        dimensions: Optional[int] = None,
    ):
        """
        Initialize the OpenAI provider.

        Args:
            api_key: OpenAI API key.
            model: Chat model name, reported for diagnostics.
            embedding_model: Model used by generate_embedding.
            dimensions: Optional reduced embedding size (text-embedding-3 models only).
        """
        self._api_key = api_key
        self._model = model
        self._embedding_model = embedding_model
        self._dimensions = dimensions
        self._client: AsyncOpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "OpenAI"

    @property
    def model_name(self) -> str:
        return self._model

    @property
    def embedding_model(self) -> str:
        return self._embedding_model

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> AsyncOpenAI:
        """Get or create the async OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def generate_embedding(self, text: str) -> list[float]:
        """
        Generate an embedding using OpenAI's API.

        Args:
            text: The text to embed.

        Returns:
            The embedding vector.
        """
        client = self._get_client()

        kwargs = {"model": self._embedding_model, "input": text}
        if self._dimensions is not None:
            kwargs["dimensions"] = self._dimensions

        logger.debug(f"Requesting embedding from OpenAI ({self._embedding_model})")

        try:
            response = await client.embeddings.create(**kwargs)
        except Exception as e:
            logger.error(f"OpenAI API error: {e}")
            raise

        return list(response.data[0].embedding)

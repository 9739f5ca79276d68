"""
Abstract base class for LLM providers.

Only the embedding capability matters to the memory system. A provider
advertises it in one of two ways:

- ``async generate_embedding(text) -> list[float]``
- ``get_embeddings()`` returning an object with async ``embed_query`` and
  ``embed_documents`` methods

Both are optional; the base implementations report them as unsupported.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional


class LLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    Implement this interface to add support for new LLM services.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the name of the LLM provider."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model being used."""
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if the provider is properly configured with API keys."""
        pass

    @property
    def supports_embeddings(self) -> bool:
        """True if ``generate_embedding`` is implemented."""
        return type(self).generate_embedding is not LLMProvider.generate_embedding

    async def generate_embedding(self, text: str) -> list[float]:
        """
        Generate an embedding for one text.

        Raises:
            NotImplementedError: The provider has no embedding model.
        """
        raise NotImplementedError(f"{self.provider_name} does not generate embeddings")

    def get_embeddings(self) -> Optional[Any]:
        """Return a ready-made embeddings object, or None."""
        return None

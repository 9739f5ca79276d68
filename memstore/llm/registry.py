"""
LLM provider registry.

Holds the configured providers by name and designates one as default.
The memory system asks it for the default provider when choosing an
embedding source.
"""

import logging
from typing import Literal, Optional

from .base import LLMProvider
from .openai_client import OpenAIProvider

logger = logging.getLogger("memstore.llm.registry")


class LLMService:
    """Named collection of LLM providers with a default."""

    def __init__(self):
        self._providers: dict[str, LLMProvider] = {}
        self._default: Optional[str] = None

    def register(self, provider: LLMProvider, name: Optional[str] = None, default: bool = False) -> str:
        """
        Register a provider.

        Args:
            provider: The provider instance
            name: Registry key (defaults to the provider name, lower-cased)
            default: Make it the default provider. The first registered
                provider becomes the default automatically.

        Returns:
            The name the provider was registered under
        """
        key = name or provider.provider_name.lower()
        self._providers[key] = provider
        if default or self._default is None:
            self._default = key
        logger.info(f"Registered LLM provider: {key}")
        return key

    def unregister(self, name: str) -> None:
        self._providers.pop(name, None)
        if self._default == name:
            self._default = next(iter(self._providers), None)

    def set_default(self, name: str) -> None:
        if name not in self._providers:
            raise KeyError(f"Unknown LLM provider: {name}")
        self._default = name

    def get_provider(self, name: str) -> Optional[LLMProvider]:
        return self._providers.get(name)

    def get_default_provider(self) -> Optional[LLMProvider]:
        if self._default is None:
            return None
        return self._providers.get(self._default)

    @property
    def names(self) -> list[str]:
        return list(self._providers)


def create_llm_provider(
    provider: Literal["openai"],
    openai_api_key: str = "",
    openai_model: str = "gpt-4o",
    embedding_model: str = "text-embedding-3-small",
    dimensions: Optional[int] = None,
) -> LLMProvider:
    """
    Create an LLM provider based on the specified type.

    Args:
        provider: Which provider to use ("openai").
        openai_api_key: OpenAI API key (required if provider is "openai").
        openai_model: OpenAI chat model name.
        embedding_model: OpenAI embedding model.
        dimensions: Optional reduced embedding size.

    Returns:
        Configured LLMProvider instance.

    Raises:
        ValueError: If provider is not supported or not properly configured.
    """
    logger.info(f"Creating LLM provider: {provider}")

    if provider == "openai":
        if not openai_api_key:
            raise ValueError("OpenAI API key is required when using OpenAI provider")
        return OpenAIProvider(
            api_key=openai_api_key,
            model=openai_model,
            embedding_model=embedding_model,
            dimensions=dimensions,
        )

    raise ValueError(f"Unsupported LLM provider: {provider}")

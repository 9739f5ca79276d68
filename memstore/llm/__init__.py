"""
LLM Provider Interface Module.

The embedding capability surface of LLM providers, plus a registry that
tracks which provider is the default.
"""

from .base import LLMProvider
from .openai_client import OpenAIProvider
from .registry import LLMService, create_llm_provider

__all__ = [
    "LLMProvider",
    "OpenAIProvider",
    "LLMService",
    "create_llm_provider",
]

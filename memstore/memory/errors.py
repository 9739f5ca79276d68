"""
Exceptions raised by the memory system.

Read paths never raise for "not found"; these are reserved for
initialization problems and for write paths the caller must know about.
"""


class MemoryStoreError(RuntimeError):
    """Base class for all memory system errors."""


class InitializationError(MemoryStoreError):
    """A backend or the embedding pipeline could not be set up."""


class EmbeddingUnavailableError(InitializationError):
    """No embedding capability is configured, so nothing can be indexed."""


class UnknownBackendError(InitializationError, ValueError):
    """A configured backend kind has no registered implementation."""


class NotInitializedError(MemoryStoreError):
    """An operation ran before the provider finished initializing."""


class QueryError(MemoryStoreError):
    """A backend driver failed while reading or writing records."""

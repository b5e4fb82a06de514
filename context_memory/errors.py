"""Exception types raised by the memory engine."""


class MemoryEngineError(Exception):
    """Base class for engine errors."""


class MemoryValidationError(MemoryEngineError, ValueError):
    """Request rejected before any state was touched."""


class EmbeddingProviderError(MemoryEngineError):
    """The embedding backend failed. Safe to retry with backoff."""

    retryable = True

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider

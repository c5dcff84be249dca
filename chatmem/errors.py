"""Exception types raised by the memory engine."""


class MemoryEngineError(Exception):
    """Base class for all memory engine errors."""


class ValidationError(MemoryEngineError, ValueError):
    """Bad input: out-of-range importance or strength, empty content, bad config."""


class DimensionMismatch(MemoryEngineError):
    """An embedding's dimension does not match the store's configured dimension."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Embedding dimension mismatch: expected {expected}, got {actual}")


class NotPermitted(MemoryEngineError):
    """The operation is disabled by the current permission configuration."""

    def __init__(self, permission: str) -> None:
        self.permission = permission
        super().__init__(f"Operation not permitted: {permission} is disabled")


class StoreUnavailable(MemoryEngineError):
    """The record store could not be reached after retries."""


class EmbeddingUnavailable(MemoryEngineError):
    """The embedding provider failed or returned an unusable response."""

"""Custom exception classes for Kioku."""

from typing import Optional


class KiokuError(Exception):
    """Base class for all Kioku errors."""


class StoreError(KiokuError):
    """Raised by memory stores. Subclasses identify the failure kind."""


class DimensionMismatchError(StoreError):
    """A vector does not match the store's configured embedding dimension.

    This is a caller bug and is raised before any I/O happens.

    Attributes:
        expected: Dimension the store was configured with
        actual: Dimension of the offending vector
    """

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Expected vector of dimension {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class NotFoundError(StoreError):
    """Update target does not exist."""

    def __init__(self, entry_id):
        super().__init__(f"Memory entry {entry_id} not found")
        self.entry_id = entry_id


class ConflictError(StoreError):
    """Insert of an id that already exists."""

    def __init__(self, entry_id):
        super().__init__(f"Memory entry {entry_id} already exists")
        self.entry_id = entry_id


class BackendError(StoreError):
    """I/O or driver failure from a persistent backend.

    Attributes:
        backend: Backend name (e.g. "sqlite", "duckdb")
    """

    def __init__(self, backend: str, message: str):
        super().__init__(f"{backend} backend error: {message}")
        self.backend = backend


class EmbeddingUnavailableError(KiokuError):
    """The embedding provider could not produce a vector.

    Covers missing optional dependencies, network, auth and rate-limit failures.
    """

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ConfigError(KiokuError):
    """Configuration could not be parsed or validated."""

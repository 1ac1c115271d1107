"""Memory entries, stores and embedding providers."""

from kioku.memory.embeddings import EmbeddingProvider, create_embedding_provider
from kioku.memory.inmemory import InMemoryStore
from kioku.memory.schema import MemoryEntry, MemoryMetadata, MemoryRole, ScoredEntry
from kioku.memory.scoped import ChatScopedStore
from kioku.memory.search import DistanceMetric, SearchConfig
from kioku.memory.sqlite import SQLiteStore
from kioku.memory.store import MemoryStore, StoreBackend, create_store

__all__ = [
    "ChatScopedStore",
    "DistanceMetric",
    "EmbeddingProvider",
    "InMemoryStore",
    "MemoryEntry",
    "MemoryMetadata",
    "MemoryRole",
    "MemoryStore",
    "SQLiteStore",
    "ScoredEntry",
    "SearchConfig",
    "StoreBackend",
    "create_embedding_provider",
    "create_store",
]

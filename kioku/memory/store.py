"""Storage contract shared by every memory backend.

Each backend implements the same capability set: point CRUD, scoped listing
by user or conversation, and similarity search. ``add`` is insert-only and
``update`` requires the entry to exist on every backend.
"""

import uuid
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Sequence, Union

from kioku.memory.schema import MemoryEntry, ScoredEntry
from kioku.memory.search import SearchConfig, check_dimension

if TYPE_CHECKING:
    from kioku.config import StoreConfig

EntryId = Union[uuid.UUID, str]

DEFAULT_EMBEDDING_DIM = 384


class StoreBackend(str, Enum):
    """Backend selected at construction time from configuration."""

    MEMORY = "memory"
    SQLITE = "sqlite"
    DUCKDB = "duckdb"


def coerce_id(entry_id: EntryId) -> uuid.UUID:
    """Accept a UUID or its string form."""
    return entry_id if isinstance(entry_id, uuid.UUID) else uuid.UUID(str(entry_id))


def newest(entries: List[MemoryEntry], limit: Optional[int]) -> List[MemoryEntry]:
    """Sort ascending by timestamp and keep the newest ``limit`` entries."""
    entries = sorted(entries, key=lambda e: e.metadata.timestamp)
    if limit is not None:
        entries = entries[-limit:] if limit > 0 else []
    return entries


class MemoryStore(ABC):
    """Abstract memory store.

    Attributes:
        embedding_dim: Length every stored embedding and query vector must have
        search_config: Similarity search tuning (read-only after construction)
    """

    backend_name = "abstract"

    def __init__(self, embedding_dim: int = DEFAULT_EMBEDDING_DIM, search_config: Optional[SearchConfig] = None):
        self.embedding_dim = embedding_dim
        self.search_config = search_config or SearchConfig()

    def _validate_entry(self, entry: MemoryEntry) -> None:
        if entry.embedding is not None:
            check_dimension(entry.embedding, self.embedding_dim)

    @abstractmethod
    async def add(self, entry: MemoryEntry) -> None:
        """Insert an entry.

        Raises:
            ConflictError: If an entry with the same id exists
            DimensionMismatchError: If the embedding has the wrong length
        """
        pass

    @abstractmethod
    async def get(self, entry_id: EntryId) -> Optional[MemoryEntry]:
        """Point lookup. Returns None when the id is unknown."""
        pass

    @abstractmethod
    async def update(self, entry: MemoryEntry) -> None:
        """Replace an existing entry as a whole.

        Raises:
            NotFoundError: If no entry has this id
            DimensionMismatchError: If the embedding has the wrong length
        """
        pass

    @abstractmethod
    async def delete(self, entry_id: EntryId) -> bool:
        """Remove an entry. Idempotent.

        Returns:
            True if an entry was removed, False if it did not exist
        """
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        """All entries for a user, ascending by timestamp.

        Args:
            user_id: User to list
            limit: When given, only the newest ``limit`` entries are returned
        """
        pass

    @abstractmethod
    async def list_by_conversation(self, conversation_id: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        """All entries for a conversation, ascending by timestamp.

        Args:
            conversation_id: Conversation to list
            limit: When given, only the newest ``limit`` entries are returned
        """
        pass

    @abstractmethod
    async def semantic_search(
        self,
        query_vector: Sequence[float],
        limit: int,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> List[ScoredEntry]:
        """Rank embedded entries by similarity to ``query_vector``.

        Args:
            query_vector: Query embedding, must have ``embedding_dim`` components
            limit: Maximum results to return
            user_id: Restrict to this user
            conversation_id: Restrict to this conversation

        Returns:
            At most ``limit`` hits, highest score first. Empty when nothing qualifies.

        Raises:
            DimensionMismatchError: Before any I/O, if the query has the wrong length
        """
        pass

    @abstractmethod
    async def list_all(self) -> List[MemoryEntry]:
        """Every entry, ascending by timestamp."""
        pass

    @abstractmethod
    async def count(self) -> int:
        """Total number of entries."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        return None


def create_store(config: "StoreConfig") -> MemoryStore:
    """Construct the backend named by the configuration.

    Args:
        config: Store configuration section

    Returns:
        A ready-to-use store. Persistent backends create their schema on open.
    """
    from kioku.xdg import get_xdg_data_path

    backend = StoreBackend(config.backend)

    if backend == StoreBackend.MEMORY:
        from kioku.memory.inmemory import InMemoryStore

        return InMemoryStore(embedding_dim=config.embedding_dim, search_config=config.search)

    if backend == StoreBackend.SQLITE:
        from kioku.memory.sqlite import SQLiteStore

        path = Path(config.path) if config.path else get_xdg_data_path("memory") / "memories.sqlite3"
        return SQLiteStore(db_path=path, embedding_dim=config.embedding_dim, search_config=config.search)

    if backend == StoreBackend.DUCKDB:
        from kioku.memory.duckdb_store import DuckDBVectorStore

        path = Path(config.path) if config.path else get_xdg_data_path("memory") / "memories.duckdb"
        return DuckDBVectorStore(
            db_path=path,
            table_name=config.table_name,
            embedding_dim=config.embedding_dim,
            search_config=config.search,
        )

    raise ValueError(f"Unsupported store backend: {backend}")

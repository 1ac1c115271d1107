"""Volatile in-memory store with brute-force similarity search.

Adequate for tests, development and small deployments. Nothing survives a
restart.
"""

import copy
import logging
import threading
import uuid
from typing import Dict, List, Optional, Sequence

from kioku.exceptions import ConflictError, NotFoundError
from kioku.memory.schema import MemoryEntry, ScoredEntry
from kioku.memory.search import SearchConfig, check_dimension, matches_scope, rank_exact
from kioku.memory.store import DEFAULT_EMBEDDING_DIM, EntryId, MemoryStore, coerce_id, newest

logger = logging.getLogger(__name__)


class InMemoryStore(MemoryStore):
    """Dict-backed store. Entries are copied on the way in and out."""

    backend_name = "memory"

    def __init__(self, embedding_dim: int = DEFAULT_EMBEDDING_DIM, search_config: Optional[SearchConfig] = None):
        super().__init__(embedding_dim=embedding_dim, search_config=search_config)
        self._entries: Dict[uuid.UUID, MemoryEntry] = {}
        self._lock = threading.Lock()

    async def add(self, entry: MemoryEntry) -> None:
        self._validate_entry(entry)
        with self._lock:
            if entry.id in self._entries:
                raise ConflictError(entry.id)
            self._entries[entry.id] = copy.deepcopy(entry)
        logger.debug(f"Stored entry {entry.id} (embedding={entry.has_embedding})")

    async def get(self, entry_id: EntryId) -> Optional[MemoryEntry]:
        with self._lock:
            entry = self._entries.get(coerce_id(entry_id))
        return copy.deepcopy(entry) if entry is not None else None

    async def update(self, entry: MemoryEntry) -> None:
        self._validate_entry(entry)
        with self._lock:
            if entry.id not in self._entries:
                raise NotFoundError(entry.id)
            self._entries[entry.id] = copy.deepcopy(entry)
        logger.debug(f"Updated entry {entry.id}")

    async def delete(self, entry_id: EntryId) -> bool:
        with self._lock:
            removed = self._entries.pop(coerce_id(entry_id), None)
        return removed is not None

    def _snapshot(self) -> List[MemoryEntry]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._entries.values()]

    async def list_by_user(self, user_id: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        entries = [e for e in self._snapshot() if e.metadata.user_id == user_id]
        return newest(entries, limit)

    async def list_by_conversation(self, conversation_id: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        entries = [e for e in self._snapshot() if e.metadata.conversation_id == conversation_id]
        return newest(entries, limit)

    async def semantic_search(
        self,
        query_vector: Sequence[float],
        limit: int,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> List[ScoredEntry]:
        check_dimension(query_vector, self.embedding_dim)
        if limit <= 0:
            return []

        # Scope filters run inside the scan, so the top-k is never short.
        candidates = [
            e
            for e in self._snapshot()
            if e.embedding is not None and matches_scope(e, user_id, conversation_id)
        ]
        results = rank_exact(self.search_config.metric, query_vector, candidates, limit)
        logger.debug(f"In-memory search over {len(candidates)} candidates returned {len(results)}")
        return results

    async def list_all(self) -> List[MemoryEntry]:
        return newest(self._snapshot(), None)

    async def count(self) -> int:
        with self._lock:
            return len(self._entries)

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()

"""Relational memory store on SQLite.

Scope filters are pushed into the SQL ``WHERE`` clause; the surviving
candidates are ranked exactly in Python. Embeddings are stored as JSON text so
that ``add`` followed by ``get`` returns an identical entry.
"""

import asyncio
import json
import logging
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

from kioku.exceptions import BackendError, ConflictError, NotFoundError
from kioku.memory.schema import MemoryEntry, MemoryMetadata, MemoryRole, ScoredEntry, format_timestamp, parse_timestamp
from kioku.memory.search import SearchConfig, check_dimension, rank_exact
from kioku.memory.store import DEFAULT_EMBEDDING_DIM, EntryId, MemoryStore, coerce_id

logger = logging.getLogger(__name__)

_COLUMNS = "id, content, user_id, conversation_id, role, timestamp, token_count, importance, embedding"


class SQLiteStore(MemoryStore):
    """SQLite-backed store. Use ``":memory:"`` for a throwaway database."""

    backend_name = "sqlite"

    def __init__(
        self,
        db_path: Path | str = ":memory:",
        embedding_dim: int = DEFAULT_EMBEDDING_DIM,
        search_config: Optional[SearchConfig] = None,
    ):
        """Open (and create if needed) the database.

        Args:
            db_path: Path to the SQLite file, or ":memory:"
            embedding_dim: Dimension of embedding vectors
            search_config: Search tuning; metric is the only knob SQLite uses
        """
        super().__init__(embedding_dim=embedding_dim, search_config=search_config)
        self.db_path = db_path
        self._lock = threading.Lock()

        try:
            if str(db_path) != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self.conn: Optional[sqlite3.Connection] = sqlite3.connect(str(db_path), check_same_thread=False)
            self._init_schema()
        except (sqlite3.Error, OSError) as e:
            raise BackendError(self.backend_name, f"failed to open {db_path}: {e}") from e

    def _init_schema(self) -> None:
        """Create table and indexes if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS memory_entries (
                id TEXT PRIMARY KEY,
                content TEXT NOT NULL,
                user_id TEXT,
                conversation_id TEXT,
                role TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                token_count INTEGER,
                importance REAL,
                embedding TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_memory_user_id ON memory_entries(user_id);
            CREATE INDEX IF NOT EXISTS idx_memory_conversation_id ON memory_entries(conversation_id);
            CREATE INDEX IF NOT EXISTS idx_memory_timestamp ON memory_entries(timestamp);
        """)
        self.conn.commit()

    async def _run(self, sql: str, params: Tuple[Any, ...] = (), fetch: bool = False) -> Tuple[List[tuple], int]:
        """Execute one statement in a worker thread.

        Returns:
            (rows, rowcount); rows is empty unless ``fetch`` is set
        """

        def _execute() -> Tuple[List[tuple], int]:
            with self._lock:
                if self.conn is None:
                    raise BackendError(self.backend_name, "connection is closed")
                try:
                    cursor = self.conn.execute(sql, params)
                    rows = cursor.fetchall() if fetch else []
                    self.conn.commit()
                    return rows, cursor.rowcount
                except sqlite3.IntegrityError:
                    self.conn.rollback()
                    raise
                except sqlite3.Error as e:
                    self.conn.rollback()
                    raise BackendError(self.backend_name, str(e)) from e

        return await asyncio.to_thread(_execute)

    @staticmethod
    def _entry_params(entry: MemoryEntry) -> Tuple[Any, ...]:
        meta = entry.metadata
        return (
            entry.content,
            meta.user_id,
            meta.conversation_id,
            meta.role.value,
            format_timestamp(meta.timestamp),
            meta.token_count,
            meta.importance,
            json.dumps(entry.embedding) if entry.embedding is not None else None,
        )

    @staticmethod
    def _row_to_entry(row: tuple) -> MemoryEntry:
        entry_id, content, user_id, conversation_id, role, timestamp, token_count, importance, embedding = row
        return MemoryEntry(
            id=uuid.UUID(entry_id),
            content=content,
            embedding=json.loads(embedding) if embedding is not None else None,
            metadata=MemoryMetadata(
                user_id=user_id,
                conversation_id=conversation_id,
                role=MemoryRole.parse(role),
                timestamp=parse_timestamp(timestamp),
                token_count=token_count,
                importance=importance,
            ),
        )

    async def add(self, entry: MemoryEntry) -> None:
        self._validate_entry(entry)
        try:
            await self._run(
                f"INSERT INTO memory_entries ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (str(entry.id),) + self._entry_params(entry),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(entry.id) from e
        logger.debug(f"Stored entry {entry.id} (embedding={entry.has_embedding})")

    async def get(self, entry_id: EntryId) -> Optional[MemoryEntry]:
        rows, _ = await self._run(
            f"SELECT {_COLUMNS} FROM memory_entries WHERE id = ?", (str(coerce_id(entry_id)),), fetch=True
        )
        return self._row_to_entry(rows[0]) if rows else None

    async def update(self, entry: MemoryEntry) -> None:
        self._validate_entry(entry)
        _, rowcount = await self._run(
            """
            UPDATE memory_entries SET
                content = ?, user_id = ?, conversation_id = ?, role = ?,
                timestamp = ?, token_count = ?, importance = ?, embedding = ?
            WHERE id = ?
            """,
            self._entry_params(entry) + (str(entry.id),),
        )
        if rowcount == 0:
            raise NotFoundError(entry.id)
        logger.debug(f"Updated entry {entry.id}")

    async def delete(self, entry_id: EntryId) -> bool:
        _, rowcount = await self._run("DELETE FROM memory_entries WHERE id = ?", (str(coerce_id(entry_id)),))
        return rowcount > 0

    async def _list_where(self, where_sql: str, params: Tuple[Any, ...], limit: Optional[int]) -> List[MemoryEntry]:
        if limit is not None:
            if limit <= 0:
                return []
            # Newest `limit` rows, flipped back to ascending order
            sql = f"""
                SELECT * FROM (
                    SELECT {_COLUMNS} FROM memory_entries {where_sql}
                    ORDER BY timestamp DESC LIMIT ?
                ) ORDER BY timestamp ASC
            """
            params = params + (limit,)
        else:
            sql = f"SELECT {_COLUMNS} FROM memory_entries {where_sql} ORDER BY timestamp ASC"
        rows, _ = await self._run(sql, params, fetch=True)
        return [self._row_to_entry(row) for row in rows]

    async def list_by_user(self, user_id: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        return await self._list_where("WHERE user_id = ?", (user_id,), limit)

    async def list_by_conversation(self, conversation_id: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        return await self._list_where("WHERE conversation_id = ?", (conversation_id,), limit)

    async def list_all(self) -> List[MemoryEntry]:
        return await self._list_where("", (), None)

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

        where_clauses = ["embedding IS NOT NULL"]
        params: List[Any] = []
        if user_id is not None:
            where_clauses.append("user_id = ?")
            params.append(user_id)
        if conversation_id is not None:
            where_clauses.append("conversation_id = ?")
            params.append(conversation_id)

        rows, _ = await self._run(
            f"SELECT {_COLUMNS} FROM memory_entries WHERE {' AND '.join(where_clauses)}",
            tuple(params),
            fetch=True,
        )
        candidates = [self._row_to_entry(row) for row in rows]
        results = rank_exact(self.search_config.metric, query_vector, candidates, limit)
        logger.debug(f"SQLite search over {len(candidates)} candidates returned {len(results)}")
        return results

    async def count(self) -> int:
        rows, _ = await self._run("SELECT COUNT(*) FROM memory_entries", fetch=True)
        return rows[0][0] if rows else 0

    async def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

"""Vector-native memory store on DuckDB.

Embeddings live in a fixed-size ``FLOAT[dim]`` column and are ranked with
DuckDB's array distance functions. An HNSW index from the ``vss`` extension
can be created with :meth:`DuckDBVectorStore.create_index`; without one,
approximate mode is a full scan that happens to be exact.

Embeddings are stored as 32-bit floats. ``add`` and ``update`` round the
entry's embedding to float32 in place, so the caller holds what ``get`` returns.
"""

import asyncio
import logging
import re
import struct
import threading
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple, TypeVar

import duckdb

from kioku.exceptions import BackendError, ConflictError, NotFoundError
from kioku.memory.schema import MemoryEntry, MemoryMetadata, MemoryRole, ScoredEntry, format_timestamp, parse_timestamp
from kioku.memory.search import (
    DistanceMetric,
    SearchConfig,
    check_dimension,
    distance_to_similarity,
    matches_scope,
    overfetch_size,
    rank_exact,
)
from kioku.memory.store import DEFAULT_EMBEDDING_DIM, EntryId, MemoryStore, coerce_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

_COLUMNS = "id, content, user_id, conversation_id, role, timestamp, token_count, importance, embedding"
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Distance function per metric, all "smaller = closer"
_DISTANCE_SQL = {
    DistanceMetric.COSINE: "array_cosine_distance",
    DistanceMetric.L2: "array_distance",
    DistanceMetric.DOT: "array_negative_inner_product",
}

# Metric names understood by the vss HNSW index
_HNSW_METRIC = {
    DistanceMetric.COSINE: "cosine",
    DistanceMetric.L2: "l2sq",
    DistanceMetric.DOT: "ip",
}


def to_float32(vector: Sequence[float]) -> List[float]:
    """Round each component to the nearest float32 value."""
    return list(struct.unpack(f"{len(vector)}f", struct.pack(f"{len(vector)}f", *vector)))


class IndexType(str, Enum):
    """Vector index kinds that can be built on the embedding column."""

    HNSW = "hnsw"


class DuckDBVectorStore(MemoryStore):
    """DuckDB-backed store with approximate and exact similarity search.

    Attributes:
        db_path: Database file, or ":memory:"
        table_name: Table holding the entries
    """

    backend_name = "duckdb"

    def __init__(
        self,
        db_path: Path | str = ":memory:",
        table_name: str = "memories",
        embedding_dim: int = DEFAULT_EMBEDDING_DIM,
        search_config: Optional[SearchConfig] = None,
    ):
        """Open (and create if needed) the database.

        Args:
            db_path: Path to DuckDB database file, or ":memory:"
            table_name: Table name; must be a plain SQL identifier
            embedding_dim: Dimension of embedding vectors
            search_config: Search tuning
        """
        super().__init__(embedding_dim=embedding_dim, search_config=search_config)
        if not _IDENTIFIER.match(table_name):
            raise ValueError(f"Invalid table name: {table_name!r}")

        self.db_path = db_path
        self.table_name = table_name
        self._lock = threading.Lock()
        self._vss_loaded = False

        try:
            if str(db_path) != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(str(db_path))
            self._init_schema()
        except (duckdb.Error, OSError) as e:
            raise BackendError(self.backend_name, f"failed to open {db_path}: {e}") from e

    @property
    def _vector_type(self) -> str:
        return f"FLOAT[{self.embedding_dim}]"

    @property
    def _index_name(self) -> str:
        return f"{self.table_name}_embedding_hnsw"

    def _init_schema(self) -> None:
        """Create the table if it doesn't exist."""
        # No PRIMARY KEY or ART indexes: id uniqueness is checked under the write lock
        self._conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table_name} (
                id VARCHAR NOT NULL,
                content VARCHAR NOT NULL,
                user_id VARCHAR,
                conversation_id VARCHAR,
                role VARCHAR NOT NULL,
                timestamp VARCHAR NOT NULL,
                token_count INTEGER,
                importance DOUBLE,
                embedding {self._vector_type}
            )
        """)

        # A persisted HNSW index needs the extension loaded before it is touched
        existing = self._conn.execute(
            "SELECT COUNT(*) FROM duckdb_indexes() WHERE index_name = ?", [self._index_name]
        ).fetchone()
        if existing and existing[0]:
            self._load_vss(self._conn)

    def _load_vss(self, cursor: duckdb.DuckDBPyConnection) -> None:
        if self._vss_loaded:
            return
        cursor.execute("INSTALL vss; LOAD vss;")
        cursor.execute("SET hnsw_enable_experimental_persistence = true")
        self._vss_loaded = True
        logger.debug("Loaded DuckDB vss extension")

    async def _run(self, fn: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        """Run ``fn`` with a fresh cursor in a worker thread."""

        def _execute() -> T:
            with self._lock:
                if self._conn is None:
                    raise BackendError(self.backend_name, "connection is closed")
                cursor = self._conn.cursor()
                try:
                    return fn(cursor)
                except duckdb.Error as e:
                    raise BackendError(self.backend_name, str(e)) from e
                finally:
                    cursor.close()

        return await asyncio.to_thread(_execute)

    @staticmethod
    def _entry_params(entry: MemoryEntry) -> List[Any]:
        meta = entry.metadata
        return [
            entry.content,
            meta.user_id,
            meta.conversation_id,
            meta.role.value,
            format_timestamp(meta.timestamp),
            meta.token_count,
            meta.importance,
            list(entry.embedding) if entry.embedding is not None else None,
        ]

    @staticmethod
    def _row_to_entry(row: Sequence[Any]) -> MemoryEntry:
        entry_id, content, user_id, conversation_id, role, timestamp, token_count, importance, embedding = row[:9]
        return MemoryEntry(
            id=uuid.UUID(entry_id),
            content=content,
            embedding=[float(x) for x in embedding] if embedding is not None else None,
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
        if entry.embedding is not None:
            entry.embedding = to_float32(entry.embedding)
        entry_id = str(entry.id)

        def _insert(cursor: duckdb.DuckDBPyConnection) -> bool:
            if cursor.execute(f"SELECT 1 FROM {self.table_name} WHERE id = ?", [entry_id]).fetchone():
                return False
            cursor.execute(
                f"""
                INSERT INTO {self.table_name} ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, CAST(? AS {self._vector_type}))
            """,
                [entry_id] + self._entry_params(entry),
            )
            return True

        if not await self._run(_insert):
            raise ConflictError(entry.id)
        logger.debug(f"Stored entry {entry.id} (embedding={entry.has_embedding})")

    async def get(self, entry_id: EntryId) -> Optional[MemoryEntry]:
        key = str(coerce_id(entry_id))
        row = await self._run(
            lambda cursor: cursor.execute(
                f"SELECT {_COLUMNS} FROM {self.table_name} WHERE id = ?", [key]
            ).fetchone()
        )
        return self._row_to_entry(row) if row else None

    async def update(self, entry: MemoryEntry) -> None:
        self._validate_entry(entry)
        if entry.embedding is not None:
            entry.embedding = to_float32(entry.embedding)
        params = self._entry_params(entry) + [str(entry.id)]
        result = await self._run(
            lambda cursor: cursor.execute(
                f"""
                UPDATE {self.table_name} SET
                    content = ?, user_id = ?, conversation_id = ?, role = ?,
                    timestamp = ?, token_count = ?, importance = ?,
                    embedding = CAST(? AS {self._vector_type})
                WHERE id = ?
                RETURNING id
            """,
                params,
            ).fetchone()
        )
        if result is None:
            raise NotFoundError(entry.id)
        logger.debug(f"Updated entry {entry.id}")

    async def delete(self, entry_id: EntryId) -> bool:
        key = str(coerce_id(entry_id))
        result = await self._run(
            lambda cursor: cursor.execute(
                f"DELETE FROM {self.table_name} WHERE id = ? RETURNING id", [key]
            ).fetchone()
        )
        if result:
            logger.debug(f"Deleted entry {key}")
            return True
        return False

    async def _list_where(self, where_sql: str, params: List[Any], limit: Optional[int]) -> List[MemoryEntry]:
        if limit is not None:
            if limit <= 0:
                return []
            sql = f"""
                SELECT * FROM (
                    SELECT {_COLUMNS} FROM {self.table_name} {where_sql}
                    ORDER BY timestamp DESC LIMIT ?
                ) ORDER BY timestamp ASC
            """
            params = params + [limit]
        else:
            sql = f"SELECT {_COLUMNS} FROM {self.table_name} {where_sql} ORDER BY timestamp ASC"
        rows = await self._run(lambda cursor: cursor.execute(sql, params).fetchall())
        return [self._row_to_entry(row) for row in rows]

    async def list_by_user(self, user_id: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        return await self._list_where("WHERE user_id = ?", [user_id], limit)

    async def list_by_conversation(self, conversation_id: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        return await self._list_where("WHERE conversation_id = ?", [conversation_id], limit)

    async def list_all(self) -> List[MemoryEntry]:
        return await self._list_where("", [], None)

    @staticmethod
    def _scope_sql(user_id: Optional[str], conversation_id: Optional[str]) -> Tuple[List[str], List[Any]]:
        where_clauses = []
        params: List[Any] = []
        if user_id is not None:
            where_clauses.append("user_id = ?")
            params.append(user_id)
        if conversation_id is not None:
            where_clauses.append("conversation_id = ?")
            params.append(conversation_id)
        return where_clauses, params

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

        config = self.search_config
        query = [float(x) for x in query_vector]

        if config.exact:
            results = await self._search_exact(query, limit, user_id, conversation_id)
        else:
            results = await self._search_approximate(query, limit, user_id, conversation_id)

        logger.debug(
            f"DuckDB search (exact={config.exact}, metric={config.metric.value}) returned {len(results)} results"
        )
        return results

    async def _search_exact(
        self,
        query: List[float],
        limit: int,
        user_id: Optional[str],
        conversation_id: Optional[str],
    ) -> List[ScoredEntry]:
        """Brute-force every candidate, bypassing any vector index."""
        where_clauses = ["embedding IS NOT NULL"]
        params: List[Any] = []
        if self.search_config.filter_pushdown:
            scope_clauses, params = self._scope_sql(user_id, conversation_id)
            where_clauses.extend(scope_clauses)

        sql = f"SELECT {_COLUMNS} FROM {self.table_name} WHERE {' AND '.join(where_clauses)}"
        rows = await self._run(lambda cursor: cursor.execute(sql, params).fetchall())
        candidates = [
            entry
            for entry in (self._row_to_entry(row) for row in rows)
            if matches_scope(entry, user_id, conversation_id)
        ]
        return rank_exact(self.search_config.metric, query, candidates, limit)

    async def _search_approximate(
        self,
        query: List[float],
        limit: int,
        user_id: Optional[str],
        conversation_id: Optional[str],
    ) -> List[ScoredEntry]:
        """Index-friendly ``ORDER BY distance LIMIT k`` with optional refine and post-filtering."""
        config = self.search_config
        metric = config.metric

        fetch = limit
        if config.refine_factor:
            fetch = limit * config.refine_factor

        where_clauses = ["embedding IS NOT NULL"]
        params: List[Any] = [query]
        if config.filter_pushdown:
            scope_clauses, scope_params = self._scope_sql(user_id, conversation_id)
            where_clauses.extend(scope_clauses)
            params.extend(scope_params)
        else:
            # Scope filters run after the scan, so over-fetch to keep top-k populated
            fetch = max(fetch, overfetch_size(limit, config))
        params.append(fetch)

        sql = f"""
            SELECT {_COLUMNS}, {_DISTANCE_SQL[metric]}(embedding, CAST(? AS {self._vector_type})) AS distance
            FROM {self.table_name}
            WHERE {' AND '.join(where_clauses)}
            ORDER BY distance ASC
            LIMIT ?
        """

        def _query(cursor: duckdb.DuckDBPyConnection) -> List[tuple]:
            if config.search_breadth and self._vss_loaded:
                cursor.execute(f"SET hnsw_ef_search = {int(config.search_breadth)}")
            return cursor.execute(sql, params).fetchall()

        rows = await self._run(_query)

        hits: List[Tuple[float, MemoryEntry]] = []
        for row in rows:
            entry = self._row_to_entry(row)
            if not matches_scope(entry, user_id, conversation_id):
                continue
            distance = row[9]
            if metric == DistanceMetric.DOT and distance is not None:
                distance = 1.0 + distance
            hits.append((distance, entry))

        if config.refine_factor:
            return rank_exact(metric, query, [entry for _, entry in hits], limit)

        return [
            ScoredEntry(score=distance_to_similarity(metric, distance), entry=entry) for distance, entry in hits[:limit]
        ]

    async def create_index(self, index_type: IndexType = IndexType.HNSW) -> None:
        """Build a vector index over the embedding column.

        Requires the ``vss`` extension, which DuckDB downloads on first use.

        Raises:
            BackendError: If the extension cannot be loaded or the index fails to build
        """
        index_type = IndexType(index_type)
        metric = _HNSW_METRIC[self.search_config.metric]

        def _create(cursor: duckdb.DuckDBPyConnection) -> None:
            self._load_vss(cursor)
            cursor.execute(
                f"""
                CREATE INDEX IF NOT EXISTS {self._index_name}
                ON {self.table_name} USING HNSW (embedding)
                WITH (metric = '{metric}')
            """
            )

        await self._run(_create)
        logger.info(f"Created {index_type.value} index on {self.table_name} (metric={metric})")

    async def count(self) -> int:
        result = await self._run(lambda cursor: cursor.execute(f"SELECT COUNT(*) FROM {self.table_name}").fetchone())
        return result[0] if result else 0

    async def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

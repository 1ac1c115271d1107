"""Behaviour every memory store backend must share."""

import asyncio
import uuid

import pytest
from conftest import TEST_DIM, make_entry, one_hot, open_store, requires_duckdb

from kioku.exceptions import ConflictError, DimensionMismatchError, NotFoundError
from kioku.memory.schema import MemoryRole


class TestCrud:
    """Point operations."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("embedding", [[0.5, 0.25, 0.0, 1.0], [0.1, 0.2, 0.3, 0.4]])
    async def test_round_trip(self, store, embedding):
        """add then get returns an equal entry."""
        entry = make_entry("Hello there", role=MemoryRole.ASSISTANT, embedding=embedding)
        entry.metadata.token_count = 3
        entry.metadata.importance = 0.5

        await store.add(entry)
        loaded = await store.get(entry.id)

        assert loaded == entry

    @pytest.mark.asyncio
    async def test_round_trip_without_embedding(self, store):
        entry = make_entry("No vector yet", user_id=None, conversation_id=None)
        await store.add(entry)

        loaded = await store.get(entry.id)

        assert loaded == entry
        assert loaded.embedding is None

    @pytest.mark.asyncio
    async def test_get_accepts_string_id(self, store):
        entry = make_entry("string id")
        await store.add(entry)

        loaded = await store.get(str(entry.id))

        assert loaded.id == entry.id

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get(uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_add_duplicate_id_conflicts(self, store):
        entry = make_entry("first")
        await store.add(entry)

        with pytest.raises(ConflictError) as exc_info:
            await store.add(entry)

        assert exc_info.value.entry_id == entry.id
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_update_replaces_entry(self, store):
        entry = make_entry("before")
        await store.add(entry)

        entry.content = "after"
        entry.embedding = one_hot(1)
        await store.update(entry)

        loaded = await store.get(entry.id)
        assert loaded.content == "after"
        assert loaded.embedding == one_hot(1)

    @pytest.mark.asyncio
    async def test_update_missing_raises_not_found(self, store):
        entry = make_entry("ghost")

        with pytest.raises(NotFoundError):
            await store.update(entry)

        assert await store.get(entry.id) is None

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, store):
        entry = make_entry("to delete")
        await store.add(entry)

        assert await store.delete(entry.id) is True
        assert await store.delete(entry.id) is False
        assert await store.get(entry.id) is None
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_delete_missing_is_not_an_error(self, store):
        assert await store.delete(uuid.uuid4()) is False

    @pytest.mark.asyncio
    async def test_add_rejects_wrong_dimension(self, store):
        entry = make_entry("bad vector", embedding=[1.0, 0.0])

        with pytest.raises(DimensionMismatchError) as exc_info:
            await store.add(entry)

        assert exc_info.value.expected == TEST_DIM
        assert exc_info.value.actual == 2
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_concurrent_adds(self, store):
        entries = [make_entry(f"message {i}", minutes=i) for i in range(20)]

        await asyncio.gather(*(store.add(e) for e in entries))

        assert await store.count() == 20


class TestListing:
    """Scoped listing."""

    @pytest.mark.asyncio
    async def test_list_by_conversation_is_ascending(self, store):
        for minutes in (3, 1, 4, 0, 2):
            await store.add(make_entry(f"m{minutes}", minutes=minutes))

        entries = await store.list_by_conversation("c1")

        assert [e.content for e in entries] == ["m0", "m1", "m2", "m3", "m4"]

    @pytest.mark.asyncio
    async def test_list_limit_keeps_newest(self, store):
        for minutes in range(5):
            await store.add(make_entry(f"m{minutes}", minutes=minutes))

        entries = await store.list_by_user("u1", limit=2)

        assert [e.content for e in entries] == ["m3", "m4"]

    @pytest.mark.asyncio
    async def test_list_limit_zero(self, store):
        await store.add(make_entry("m"))

        assert await store.list_by_user("u1", limit=0) == []

    @pytest.mark.asyncio
    async def test_listing_respects_scope(self, store):
        await store.add(make_entry("mine", user_id="u1", conversation_id="c1"))
        await store.add(make_entry("theirs", user_id="u2", conversation_id="c2"))

        by_user = await store.list_by_user("u2")
        by_conversation = await store.list_by_conversation("c1")

        assert [e.content for e in by_user] == ["theirs"]
        assert [e.content for e in by_conversation] == ["mine"]

    @pytest.mark.asyncio
    async def test_entries_without_embedding_are_listed(self, store):
        await store.add(make_entry("plain"))

        assert len(await store.list_by_conversation("c1")) == 1

    @pytest.mark.asyncio
    async def test_list_all(self, store):
        await store.add(make_entry("b", minutes=1))
        await store.add(make_entry("a", user_id="u2", conversation_id=None, minutes=0))

        entries = await store.list_all()

        assert [e.content for e in entries] == ["a", "b"]


class TestEmptyCollection:
    """A store with no entries returns empty results, never errors."""

    @pytest.mark.asyncio
    async def test_everything_is_empty(self, store):
        assert await store.list_by_user("u1") == []
        assert await store.list_by_conversation("c1") == []
        assert await store.list_all() == []
        assert await store.semantic_search(one_hot(0), 5) == []
        assert await store.semantic_search(one_hot(0), 5, user_id="u1", conversation_id="c1") == []
        assert await store.count() == 0


class TestSemanticSearch:
    """Similarity search."""

    @pytest.mark.asyncio
    async def test_one_hot_query_finds_matching_entry_first(self, store):
        a = make_entry("A", embedding=one_hot(0), minutes=0)
        b = make_entry("B", embedding=one_hot(1), minutes=1)
        c = make_entry("C", embedding=one_hot(2), minutes=2)
        for entry in (a, b, c):
            await store.add(entry)

        results = await store.semantic_search(one_hot(0), 3)

        assert results[0].entry.id == a.id
        assert results[0].score == pytest.approx(1.0)
        assert all(r.score < results[0].score for r in results[1:])

    @pytest.mark.asyncio
    async def test_scores_are_normalized_and_descending(self, store):
        vectors = [[1.0, 0.0, 0.0, 0.0], [0.5, 0.5, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0], [-1.0, 0.0, 0.0, 0.0]]
        for i, vector in enumerate(vectors):
            await store.add(make_entry(f"v{i}", embedding=vector, minutes=i))

        results = await store.semantic_search(one_hot(0), 10)

        scores = [r.score for r in results]
        assert len(results) == 4
        assert scores == sorted(scores, reverse=True)
        assert all(0.0 <= s <= 1.0 for s in scores)
        assert [r.entry.content for r in results][:2] == ["v0", "v1"]

    @pytest.mark.asyncio
    async def test_never_returns_entries_without_embedding(self, store):
        await store.add(make_entry("embedded", embedding=one_hot(0)))
        await store.add(make_entry("bare"))

        results = await store.semantic_search(one_hot(0), 10)

        assert [r.entry.content for r in results] == ["embedded"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 1, 2])
    async def test_returns_at_most_limit(self, store, limit):
        for i in range(4):
            await store.add(make_entry(f"e{i}", embedding=one_hot(i), minutes=i))

        results = await store.semantic_search(one_hot(0), limit)

        assert len(results) == limit

    @pytest.mark.asyncio
    async def test_scope_filters(self, store):
        await store.add(make_entry("u1c1", user_id="u1", conversation_id="c1", embedding=one_hot(0)))
        await store.add(make_entry("u2c2", user_id="u2", conversation_id="c2", embedding=one_hot(0)))
        await store.add(make_entry("u2c3", user_id="u2", conversation_id="c3", embedding=one_hot(0)))

        by_user = await store.semantic_search(one_hot(0), 10, user_id="u2")
        by_both = await store.semantic_search(one_hot(0), 10, user_id="u2", conversation_id="c3")

        assert sorted(r.entry.content for r in by_user) == ["u2c2", "u2c3"]
        assert [r.entry.content for r in by_both] == ["u2c3"]

    @pytest.mark.asyncio
    async def test_query_dimension_mismatch(self, store):
        await store.add(make_entry("e", embedding=one_hot(0)))

        with pytest.raises(DimensionMismatchError):
            await store.semantic_search([1.0, 0.0], 5)


class TestPersistence:
    """Persistent backends keep entries across reopen."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", ["sqlite", pytest.param("duckdb", marks=requires_duckdb)])
    async def test_reopen(self, temp_dir, backend):
        entry = make_entry("durable", embedding=one_hot(2))
        first = open_store(backend, temp_dir)
        await first.add(entry)
        await first.close()

        second = open_store(backend, temp_dir)
        try:
            assert await second.get(entry.id) == entry
            results = await second.semantic_search(one_hot(2), 1)
            assert results[0].entry.id == entry.id
        finally:
            await second.close()


class TestCreateStore:
    """Backend selection from configuration."""

    def test_memory_backend(self):
        from kioku.config import StoreConfig
        from kioku.memory.inmemory import InMemoryStore
        from kioku.memory.store import create_store

        store = create_store(StoreConfig(embedding_dim=8))

        assert isinstance(store, InMemoryStore)
        assert store.embedding_dim == 8

    @pytest.mark.asyncio
    async def test_sqlite_backend_with_path(self, temp_dir):
        from kioku.config import StoreConfig
        from kioku.memory.sqlite import SQLiteStore
        from kioku.memory.store import create_store

        store = create_store(StoreConfig(backend="sqlite", path=temp_dir / "db" / "m.sqlite3"))
        try:
            assert isinstance(store, SQLiteStore)
            assert (temp_dir / "db" / "m.sqlite3").exists()
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_sqlite_backend_default_path_uses_xdg_data(self, tmp_path):
        from kioku.config import StoreConfig
        from kioku.memory.store import create_store

        store = create_store(StoreConfig(backend="sqlite"))
        try:
            assert (tmp_path / "data" / "kioku" / "memory" / "memories.sqlite3").exists()
        finally:
            await store.close()

    @requires_duckdb
    @pytest.mark.asyncio
    async def test_duckdb_backend(self, temp_dir):
        from kioku.config import StoreConfig
        from kioku.memory.duckdb_store import DuckDBVectorStore
        from kioku.memory.store import create_store

        store = create_store(StoreConfig(backend="duckdb", path=temp_dir / "m.duckdb", table_name="chat_memory"))
        try:
            assert isinstance(store, DuckDBVectorStore)
            assert store.table_name == "chat_memory"
        finally:
            await store.close()

"""Tests for migration, export/import and embedding backfill."""

import json

import pytest
from conftest import make_entry, one_hot, open_store, requires_duckdb

from kioku.exceptions import EmbeddingUnavailableError
from kioku.memory.inmemory import InMemoryStore
from kioku.memory.migration import backfill_embeddings, export_entries, import_entries, migrate


class TestMigrate:
    """Copying between backends."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target_backend", ["sqlite", pytest.param("duckdb", marks=requires_duckdb)])
    async def test_copies_everything(self, memory_store, temp_dir, target_backend):
        entries = [
            make_entry("one", embedding=one_hot(0), minutes=0),
            make_entry("two", minutes=1),
        ]
        for entry in entries:
            await memory_store.add(entry)

        target = open_store(target_backend, temp_dir)
        try:
            stats = await migrate(memory_store, target)

            assert stats.copied == 2
            assert await target.list_all() == entries
        finally:
            await target.close()

    @pytest.mark.asyncio
    async def test_existing_entries_are_skipped(self, memory_store):
        entry = make_entry("shared")
        await memory_store.add(entry)
        target = InMemoryStore(embedding_dim=4)
        await target.add(entry)

        stats = await migrate(memory_store, target)

        assert (stats.copied, stats.skipped) == (0, 1)

    @pytest.mark.asyncio
    async def test_overwrite_replaces_existing(self, memory_store):
        entry = make_entry("new text")
        await memory_store.add(entry)
        target = InMemoryStore(embedding_dim=4)
        stale = make_entry("old text")
        stale.id = entry.id
        await target.add(stale)

        stats = await migrate(memory_store, target, overwrite=True)

        assert stats.copied == 1
        assert (await target.get(entry.id)).content == "new text"


class TestExportImport:
    """JSONL export and import."""

    @pytest.mark.asyncio
    async def test_export_then_import(self, memory_store, temp_dir):
        entries = [make_entry("alpha", embedding=[0.1, 0.2, 0.3, 0.4], minutes=0), make_entry("beta", minutes=1)]
        for entry in entries:
            await memory_store.add(entry)
        path = temp_dir / "out" / "memories.jsonl"

        count = await export_entries(memory_store, path)
        target = InMemoryStore(embedding_dim=4)
        stats = await import_entries(target, path)

        assert count == 2
        assert len(path.read_text().splitlines()) == 2
        assert stats.copied == 2
        assert await target.list_all() == entries

    @pytest.mark.asyncio
    async def test_import_skips_blank_lines(self, memory_store, temp_dir):
        path = temp_dir / "in.jsonl"
        path.write_text("\n" + json.dumps(make_entry("only").to_dict()) + "\n\n")

        stats = await import_entries(memory_store, path)

        assert stats.copied == 1

    @pytest.mark.asyncio
    async def test_import_reports_bad_line(self, memory_store, temp_dir):
        path = temp_dir / "in.jsonl"
        path.write_text(json.dumps(make_entry("ok").to_dict()) + "\n{\"content\": \"no id\"}\n")

        with pytest.raises(ValueError, match="in.jsonl:2"):
            await import_entries(memory_store, path)

        assert await memory_store.count() == 0


class TestBackfill:
    """Filling in missing embeddings."""

    @pytest.mark.asyncio
    async def test_embeds_only_missing(self, store, embedder):
        await store.add(make_entry("cat", minutes=0))
        await store.add(make_entry("dog", minutes=1))
        already = make_entry("car", embedding=one_hot(2), minutes=2)
        await store.add(already)
        progress = []

        updated = await backfill_embeddings(store, embedder, batch_size=1, on_batch=progress.append)

        assert updated == 2
        assert progress == [1, 2]
        assert sorted(embedder.calls) == ["cat", "dog"]
        results = await store.semantic_search(one_hot(1), 1)
        assert results[0].entry.content == "dog"

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, memory_store, embedder):
        await memory_store.add(make_entry("cat", embedding=one_hot(0)))

        assert await backfill_embeddings(memory_store, embedder) == 0
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_provider_failure_propagates(self, memory_store, embedder):
        await memory_store.add(make_entry("cat"))
        embedder.fail = True

        with pytest.raises(EmbeddingUnavailableError):
            await backfill_embeddings(memory_store, embedder)

"""Moving entries between stores and filling in missing embeddings."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from kioku.exceptions import ConflictError
from kioku.memory.embeddings import EmbeddingProvider
from kioku.memory.schema import MemoryEntry
from kioku.memory.store import MemoryStore

logger = logging.getLogger(__name__)


@dataclass
class TransferStats:
    """Counts from a bulk copy."""

    copied: int = 0
    skipped: int = 0


async def _insert_all(target: MemoryStore, entries: List[MemoryEntry], overwrite: bool) -> TransferStats:
    stats = TransferStats()
    for entry in entries:
        try:
            await target.add(entry)
            stats.copied += 1
        except ConflictError:
            if overwrite:
                await target.update(entry)
                stats.copied += 1
            else:
                stats.skipped += 1
    return stats


async def migrate(source: MemoryStore, target: MemoryStore, overwrite: bool = False) -> TransferStats:
    """Copy every entry from ``source`` into ``target``.

    Args:
        source: Store to read
        target: Store to write; must use the same embedding dimension
        overwrite: Replace entries whose id already exists in the target instead of skipping them

    Returns:
        Copied and skipped counts
    """
    entries = await source.list_all()
    stats = await _insert_all(target, entries, overwrite)
    logger.info(f"Migrated {stats.copied} entries ({stats.skipped} already present)")
    return stats


async def export_entries(store: MemoryStore, path: Path) -> int:
    """Write every entry to a JSONL file, oldest first.

    Returns:
        Number of entries written
    """
    entries = await store.list_all()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for entry in entries:
            f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
    logger.info(f"Exported {len(entries)} entries to {path}")
    return len(entries)


async def import_entries(store: MemoryStore, path: Path, overwrite: bool = False) -> TransferStats:
    """Load entries from a JSONL file written by :func:`export_entries`.

    Blank lines are ignored.

    Raises:
        ValueError: If a line is not a valid entry
    """
    entries = []
    with open(path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                entries.append(MemoryEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                raise ValueError(f"{path}:{line_number}: invalid entry: {e}") from e

    stats = await _insert_all(store, entries, overwrite)
    logger.info(f"Imported {stats.copied} entries from {path} ({stats.skipped} already present)")
    return stats


async def backfill_embeddings(
    store: MemoryStore,
    embedder: EmbeddingProvider,
    batch_size: int = 32,
    on_batch: Optional[Callable[[int], None]] = None,
) -> int:
    """Embed entries that have no vector yet and write them back.

    Args:
        store: Store to scan
        embedder: Provider used for the missing vectors
        batch_size: Texts per ``embed_batch`` call
        on_batch: Called with the number of entries completed after each batch

    Returns:
        Number of entries updated

    Raises:
        EmbeddingUnavailableError: If the provider fails; earlier batches stay written
    """
    pending = [entry for entry in await store.list_all() if entry.embedding is None]
    if not pending:
        return 0

    updated = 0
    for start in range(0, len(pending), batch_size):
        batch = pending[start : start + batch_size]
        vectors = await embedder.embed_batch([entry.content for entry in batch])
        for entry, vector in zip(batch, vectors):
            entry.embedding = vector
            await store.update(entry)
            updated += 1
        logger.debug(f"Backfilled {updated}/{len(pending)} embeddings")
        if on_batch:
            on_batch(updated)

    logger.info(f"Backfilled embeddings for {updated} entries")
    return updated

"""Test configuration and fixtures."""

import shutil
import tempfile
import warnings
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator, List, Optional

import pytest
import pytest_asyncio

from kioku.exceptions import EmbeddingUnavailableError
from kioku.memory.embeddings import EmbeddingProvider
from kioku.memory.schema import MemoryEntry, MemoryMetadata, MemoryRole

# Suppress RuntimeWarnings from litellm's async cleanup
warnings.filterwarnings("ignore", category=RuntimeWarning, module="litellm")

try:
    import duckdb  # noqa: F401

    HAS_DUCKDB = True
except ImportError:
    HAS_DUCKDB = False

requires_duckdb = pytest.mark.skipif(not HAS_DUCKDB, reason="duckdb not installed")

TEST_DIM = 4
BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

# Keyword -> axis; anything else lands on the last axis
KEYWORD_AXES = {"cat": 0, "dog": 1, "car": 2}


def one_hot(axis: int, dim: int = TEST_DIM) -> List[float]:
    vector = [0.0] * dim
    vector[axis] = 1.0
    return vector


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic provider: each known keyword lights up one axis."""

    name = "fake"

    def __init__(self, dim: int = TEST_DIM):
        self.dim = dim
        self.calls: List[str] = []
        self.fail = False

    @property
    def dimension(self) -> int:
        return self.dim

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingUnavailableError("provider offline", provider=self.name)
        lowered = text.lower()
        vector = [0.0] * self.dim
        for keyword, axis in KEYWORD_AXES.items():
            if keyword in lowered:
                vector[axis] = 1.0
        if not any(vector):
            vector[self.dim - 1] = 1.0
        return vector


def make_entry(
    content: str,
    user_id: Optional[str] = "u1",
    conversation_id: Optional[str] = "c1",
    role: MemoryRole = MemoryRole.USER,
    embedding: Optional[List[float]] = None,
    minutes: int = 0,
) -> MemoryEntry:
    """Build an entry whose timestamp is ``minutes`` after a fixed base time."""
    return MemoryEntry(
        content=content,
        embedding=embedding,
        metadata=MemoryMetadata(
            user_id=user_id,
            conversation_id=conversation_id,
            role=role,
            timestamp=BASE_TIME + timedelta(minutes=minutes),
        ),
    )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture(autouse=True)
def isolate_config_files(tmp_path, monkeypatch):
    """Point XDG config and data dirs at a per-test location."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    yield


@pytest.fixture
def embedder() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


def open_store(backend: str, temp_dir: Path, **kwargs):
    """Open a store of the given backend with the test dimension."""
    from kioku.memory.inmemory import InMemoryStore
    from kioku.memory.sqlite import SQLiteStore

    kwargs.setdefault("embedding_dim", TEST_DIM)
    if backend == "memory":
        return InMemoryStore(**kwargs)
    if backend == "sqlite":
        return SQLiteStore(db_path=temp_dir / "memories.sqlite3", **kwargs)
    if backend == "duckdb":
        from kioku.memory.duckdb_store import DuckDBVectorStore

        return DuckDBVectorStore(db_path=temp_dir / "memories.duckdb", **kwargs)
    raise ValueError(backend)


STORE_BACKENDS = [
    pytest.param("memory", id="memory"),
    pytest.param("sqlite", id="sqlite"),
    pytest.param("duckdb", id="duckdb", marks=requires_duckdb),
]


@pytest_asyncio.fixture(params=STORE_BACKENDS)
async def store(request, temp_dir):
    """Every backend, behind the same contract."""
    memory_store = open_store(request.param, temp_dir)
    try:
        yield memory_store
    finally:
        await memory_store.close()


@pytest.fixture
def memory_store():
    """A fresh in-memory store for tests that don't care about the backend."""
    from kioku.memory.inmemory import InMemoryStore

    return InMemoryStore(embedding_dim=TEST_DIM)


@pytest.fixture
def cli_runner():
    """Create a CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()

"""Similarity search primitives shared by every store backend.

Distances follow one convention per metric (smaller = closer) and are
normalized to a similarity score in [0, 1] (larger = closer) before they
leave a store:

- cosine: distance = 1 - cos(a, b), in [0, 2]; similarity = clamp(1 - d, 0, 1)
- l2:     distance = ||a - b||;                similarity = 1 / (1 + d)
- dot:    distance = 1 - a.b;                  similarity = clamp(1 - d, 0, 1)

The metric is fixed for the lifetime of a collection. Changing it after data
has been written makes earlier rankings incomparable.
"""

import heapq
import math
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from kioku.exceptions import DimensionMismatchError
from kioku.memory.schema import MemoryEntry, ScoredEntry


class DistanceMetric(str, Enum):
    """Distance metric for vector search."""

    COSINE = "cosine"
    L2 = "l2"
    DOT = "dot"


class SearchConfig(BaseModel):
    """Search tuning, configured once per store instance.

    Defaults keep the backend's own behaviour: approximate execution when an
    index exists, no breadth or refine override, filters pushed down.
    """

    model_config = ConfigDict(frozen=True)

    metric: DistanceMetric = DistanceMetric.COSINE
    exact: bool = Field(default=False, description="Brute-force every candidate, bypassing any vector index")
    search_breadth: Optional[int] = Field(
        default=None, ge=1, description="Neighbours explored per query (HNSW ef_search); higher = more recall"
    )
    refine_factor: Optional[int] = Field(
        default=None, ge=1, description="Over-fetch limit * refine_factor, re-score exactly, then truncate"
    )
    filter_pushdown: bool = Field(default=True, description="Apply scope filters inside the scan")
    fetch_multiplier: int = Field(default=10, ge=1, description="Over-fetch multiplier when filtering after the scan")
    min_fetch: int = Field(default=50, ge=1, description="Floor for the post-filter over-fetch size")


def check_dimension(vector: Sequence[float], expected: int) -> None:
    """Raise DimensionMismatchError if vector length differs from expected."""
    if len(vector) != expected:
        raise DimensionMismatchError(expected, len(vector))


def _dot(a: Sequence[float], b: Sequence[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


def _norm(a: Sequence[float]) -> float:
    return math.sqrt(sum(x * x for x in a))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; zero vectors compare as 0.0."""
    norm_a = _norm(a)
    norm_b = _norm(b)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return _dot(a, b) / (norm_a * norm_b)


def compute_distance(metric: DistanceMetric, a: Sequence[float], b: Sequence[float]) -> float:
    """Exact distance between two vectors under the given metric."""
    if metric == DistanceMetric.COSINE:
        return 1.0 - cosine_similarity(a, b)
    if metric == DistanceMetric.L2:
        return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))
    if metric == DistanceMetric.DOT:
        return 1.0 - _dot(a, b)
    raise ValueError(f"Unsupported distance metric: {metric}")


def distance_to_similarity(metric: DistanceMetric, distance: Optional[float]) -> float:
    """Convert a raw distance to a similarity score in [0, 1]."""
    if distance is None or math.isnan(distance):
        return 0.0
    if metric == DistanceMetric.L2:
        return 1.0 / (1.0 + max(distance, 0.0))
    return min(max(1.0 - distance, 0.0), 1.0)


def rank_exact(
    metric: DistanceMetric,
    query: Sequence[float],
    candidates: Iterable[MemoryEntry],
    limit: int,
) -> List[ScoredEntry]:
    """Brute-force top-k over candidates. Entries without embeddings are skipped.

    Ties are broken by timestamp (newer first) so results are deterministic.
    """
    if limit <= 0:
        return []

    scored: List[Tuple[float, MemoryEntry]] = [
        (compute_distance(metric, query, entry.embedding), entry)
        for entry in candidates
        if entry.embedding is not None
    ]
    best = heapq.nsmallest(limit, scored, key=lambda pair: (pair[0], -pair[1].metadata.timestamp.timestamp()))
    return [ScoredEntry(score=distance_to_similarity(metric, distance), entry=entry) for distance, entry in best]


def overfetch_size(limit: int, config: SearchConfig) -> int:
    """Candidate count to fetch when scope filters run after the scan."""
    return max(limit * config.fetch_multiplier, config.min_fetch)


def matches_scope(entry: MemoryEntry, user_id: Optional[str], conversation_id: Optional[str]) -> bool:
    """True if the entry belongs to the requested user and/or conversation."""
    if user_id is not None and entry.metadata.user_id != user_id:
        return False
    if conversation_id is not None and entry.metadata.conversation_id != conversation_id:
        return False
    return True

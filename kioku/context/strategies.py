"""Retrieval strategies that feed the context builder.

Each strategy pulls one kind of context out of the memory store. Strategies
never raise for store or embedding failures: they log the problem and return
``EMPTY`` so a single failing subsystem only removes its own section.
"""

import logging
import re
import statistics
from abc import ABC, abstractmethod
from enum import Enum
from typing import Iterable, List, Optional

from kioku.context.results import EMPTY, MessageCategory, Messages, Preferences, StrategyResult
from kioku.exceptions import EmbeddingUnavailableError, StoreError
from kioku.memory.embeddings import EmbeddingProvider
from kioku.memory.schema import MemoryEntry, MemoryRole
from kioku.memory.store import MemoryStore

logger = logging.getLogger(__name__)

PREFERENCE_MARKERS = ("i like", "i prefer", "i love", "my favorite")

_MARKER_PATTERN = re.compile(r"\b(" + "|".join(re.escape(m) for m in PREFERENCE_MARKERS) + r")\b", re.IGNORECASE)
_SENTENCE_END = re.compile(r"[.!?\n]")

# Extra rows read per recent-messages request to cover blank entries that get skipped
RECENT_OVERFETCH = 10


class StoreKind(Enum):
    """Which store a strategy reads from when the builder has more than one."""

    PRIMARY = "primary"
    RECENT = "recent"


def format_message(entry: MemoryEntry) -> str:
    """Render an entry as a ``"Role: content"`` line."""
    return f"{entry.metadata.role.value}: {entry.content}"


def extract_preferences(entries: Iterable[MemoryEntry]) -> List[str]:
    """Pull preference statements out of user messages.

    A statement runs from a marker such as "I like" to the end of its
    sentence. Only user-authored entries are considered, in the order given.
    Duplicates (case-insensitive) keep their latest position.

    Args:
        entries: Entries in chronological order

    Returns:
        Preference statements, oldest first
    """
    found: List[str] = []
    for entry in entries:
        if entry.metadata.role != MemoryRole.USER:
            continue
        for match in _MARKER_PATTERN.finditer(entry.content):
            rest = entry.content[match.start():]
            end = _SENTENCE_END.search(rest)
            statement = (rest[: end.start()] if end else rest).strip()
            if statement:
                found.append(statement)

    deduped: List[str] = []
    seen = set()
    for statement in reversed(found):
        key = statement.lower()
        if key not in seen:
            seen.add(key)
            deduped.append(statement)
    deduped.reverse()
    return deduped


class ContextStrategy(ABC):
    """Base class for context strategies."""

    name = "abstract"
    store_kind = StoreKind.PRIMARY

    @abstractmethod
    async def produce(
        self,
        store: MemoryStore,
        embedder: Optional[EmbeddingProvider],
        *,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        query: Optional[str] = None,
    ) -> StrategyResult:
        """Produce this strategy's contribution to the context.

        Args:
            store: Store to read from
            embedder: Embedding provider, needed only by strategies that embed
            user_id: Requesting user
            conversation_id: Current conversation
            query: Current user message

        Returns:
            Messages, Preferences or EMPTY
        """
        pass


class RecentMessagesStrategy(ContextStrategy):
    """The last few messages of the conversation, oldest first."""

    name = "recent"
    store_kind = StoreKind.RECENT

    def __init__(self, limit: int = 10):
        self.limit = limit

    async def produce(
        self,
        store: MemoryStore,
        embedder: Optional[EmbeddingProvider],
        *,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        query: Optional[str] = None,
    ) -> StrategyResult:
        if self.limit <= 0:
            return EMPTY

        fetch = self.limit + RECENT_OVERFETCH
        try:
            if conversation_id is not None:
                entries = await store.list_by_conversation(conversation_id, limit=fetch)
            elif user_id is not None:
                entries = await store.list_by_user(user_id, limit=fetch)
            else:
                logger.debug("Recent messages: no user or conversation scope")
                return EMPTY
        except StoreError as e:
            logger.warning(f"Recent messages unavailable: {e}")
            return EMPTY

        entries = sorted((e for e in entries if e.content.strip()), key=lambda e: e.metadata.timestamp)
        lines = [format_message(e) for e in entries[-self.limit:]]
        logger.debug(f"Recent messages: {len(lines)} of {len(entries)} entries")
        if not lines:
            return EMPTY
        return Messages(MessageCategory.RECENT, lines)


class SemanticSearchStrategy(ContextStrategy):
    """Earlier messages most similar to the current query."""

    name = "semantic"

    def __init__(self, limit: int = 5, min_score: float = 0.0):
        self.limit = limit
        self.min_score = min_score

    async def produce(
        self,
        store: MemoryStore,
        embedder: Optional[EmbeddingProvider],
        *,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        query: Optional[str] = None,
    ) -> StrategyResult:
        if query is None or not query.strip():
            logger.debug("Semantic search: empty query, skipping")
            return EMPTY
        if embedder is None:
            logger.warning("Semantic search: no embedding provider configured")
            return EMPTY
        if self.limit <= 0:
            return EMPTY

        try:
            vector = await embedder.embed(query.strip())
        except EmbeddingUnavailableError as e:
            logger.warning(f"Semantic search: embedding unavailable: {e}")
            return EMPTY

        # Prefer the conversation; fall back to everything the user has said
        scope = {"conversation_id": conversation_id} if conversation_id is not None else {"user_id": user_id}
        try:
            hits = await store.semantic_search(vector, self.limit, **scope)
        except StoreError as e:
            logger.warning(f"Semantic search failed: {e}")
            return EMPTY

        if not hits:
            logger.debug("Semantic search: no candidates")
            return EMPTY

        scores = [hit.score for hit in hits]
        logger.debug(
            f"Semantic search: {len(hits)} candidates, score min={min(scores):.3f} "
            f"mean={statistics.fmean(scores):.3f} max={max(scores):.3f}"
        )

        kept = [hit for hit in hits if hit.score >= self.min_score]
        if not kept:
            logger.warning(
                f"Semantic search: all {len(hits)} candidates scored below min_score={self.min_score} "
                f"(best {max(scores):.3f}); consider lowering the threshold"
            )
            return EMPTY

        return Messages(MessageCategory.SEMANTIC, [format_message(hit.entry) for hit in kept])


class UserPreferencesStrategy(ContextStrategy):
    """Stated likes and preferences from the user's own messages."""

    name = "preferences"

    def __init__(self, max_preferences: int = 10):
        self.max_preferences = max_preferences

    async def produce(
        self,
        store: MemoryStore,
        embedder: Optional[EmbeddingProvider],
        *,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        query: Optional[str] = None,
    ) -> StrategyResult:
        if user_id is None or self.max_preferences <= 0:
            logger.debug("User preferences: no user_id, skipping")
            return EMPTY

        try:
            entries = await store.list_by_user(user_id)
        except StoreError as e:
            logger.warning(f"User preferences unavailable: {e}")
            return EMPTY

        entries = sorted(entries, key=lambda e: e.metadata.timestamp)
        preferences = extract_preferences(entries)[-self.max_preferences:]
        logger.debug(f"User preferences: {len(preferences)} found in {len(entries)} entries")
        if not preferences:
            return EMPTY
        return Preferences("; ".join(preferences))

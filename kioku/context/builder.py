"""Context assembly from retrieval strategies.

The builder runs its strategies in order, merges what they return into a
:class:`Context`, and trims the result to a token budget. Truncation priority:

1. Semantic lines, least similar (last) first
2. Recent lines, oldest (first) first

The system message and the preferences line are never dropped. ``build()``
does not raise: a failing strategy only costs its own section.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, List, Optional

from kioku.context import prompt
from kioku.context.results import EmptyResult, MessageCategory, Messages, Preferences, StrategyResult
from kioku.context.strategies import (
    ContextStrategy,
    RecentMessagesStrategy,
    SemanticSearchStrategy,
    StoreKind,
    UserPreferencesStrategy,
)
from kioku.memory.embeddings import EmbeddingProvider
from kioku.memory.schema import utc_now
from kioku.memory.store import MemoryStore

if TYPE_CHECKING:
    from kioku.config import ContextConfig

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_BUDGET = 4096


def estimate_tokens(text: str) -> int:
    """Rough token count: UTF-8 bytes / 4, rounded up. Non-empty text is at least 1."""
    if not text:
        return 0
    return max(1, math.ceil(len(text.encode("utf-8")) / 4))


@dataclass
class ContextMetadata:
    """Bookkeeping about how a context was built."""

    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    total_tokens: int = 0
    message_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    build_ms: float = 0.0
    dropped_semantic: int = 0
    dropped_recent: int = 0
    token_budget: int = DEFAULT_TOKEN_BUDGET


@dataclass
class Context:
    """Assembled context for one model call.

    Attributes:
        system_message: Optional system instruction
        user_preferences: Preference summary, without its label
        recent_messages: ``"Role: content"`` lines, oldest first
        semantic_messages: ``"Role: content"`` lines, most similar first
        metadata: Build statistics
    """

    system_message: Optional[str] = None
    user_preferences: Optional[str] = None
    recent_messages: List[str] = field(default_factory=list)
    semantic_messages: List[str] = field(default_factory=list)
    metadata: ContextMetadata = field(default_factory=ContextMetadata)

    def is_empty(self) -> bool:
        """True when nothing was retrieved (the system message does not count)."""
        return not self.user_preferences and not self.recent_messages and not self.semantic_messages

    def estimated_tokens(self) -> int:
        total = estimate_tokens(self.system_message or "")
        if self.user_preferences:
            total += estimate_tokens(f"{prompt.PREFERENCES_LABEL} {self.user_preferences}")
        total += sum(estimate_tokens(line) for line in self.recent_messages)
        total += sum(estimate_tokens(line) for line in self.semantic_messages)
        return total

    def exceeds_limit(self, limit: int) -> bool:
        return self.estimated_tokens() > limit

    def format_for_model(self, include_system: bool = True) -> str:
        return prompt.format_for_model(
            include_system,
            self.system_message,
            self.user_preferences,
            self.recent_messages,
            self.semantic_messages,
        )

    def to_messages(self, question: str) -> List[prompt.ChatMessage]:
        return prompt.format_as_messages(self, question)


class ContextBuilder:
    """Per-request builder. The store is shared; the builder is not.

    Example:
        context = await (
            ContextBuilder(store, embedder)
            .with_strategy(RecentMessagesStrategy(limit=10))
            .with_strategy(SemanticSearchStrategy(limit=5))
            .for_user("u1")
            .for_conversation("c1")
            .with_query("what did we decide?")
            .build()
        )
    """

    def __init__(
        self,
        store: MemoryStore,
        embedder: Optional[EmbeddingProvider] = None,
        token_budget: int = DEFAULT_TOKEN_BUDGET,
    ):
        self.store = store
        self.embedder = embedder
        self.token_budget = token_budget
        self.recent_store: Optional[MemoryStore] = None
        self.strategies: List[ContextStrategy] = []
        self.user_id: Optional[str] = None
        self.conversation_id: Optional[str] = None
        self.query: Optional[str] = None
        self.system_message: Optional[str] = None

    def with_strategy(self, strategy: ContextStrategy) -> "ContextBuilder":
        self.strategies.append(strategy)
        return self

    def with_strategies(self, strategies: Iterable[ContextStrategy]) -> "ContextBuilder":
        self.strategies.extend(strategies)
        return self

    def with_token_budget(self, token_budget: int) -> "ContextBuilder":
        self.token_budget = token_budget
        return self

    def with_recent_store(self, store: MemoryStore) -> "ContextBuilder":
        """Route recent-message strategies to a separate store."""
        self.recent_store = store
        return self

    def for_user(self, user_id: Optional[str]) -> "ContextBuilder":
        self.user_id = user_id
        return self

    def for_conversation(self, conversation_id: Optional[str]) -> "ContextBuilder":
        self.conversation_id = conversation_id
        return self

    def with_query(self, query: Optional[str]) -> "ContextBuilder":
        self.query = query
        return self

    def with_system_message(self, system_message: Optional[str]) -> "ContextBuilder":
        self.system_message = system_message
        return self

    def _store_for(self, strategy: ContextStrategy) -> MemoryStore:
        if strategy.store_kind == StoreKind.RECENT and self.recent_store is not None:
            return self.recent_store
        return self.store

    async def _run_strategy(self, strategy: ContextStrategy) -> StrategyResult:
        try:
            return await strategy.produce(
                self._store_for(strategy),
                self.embedder,
                user_id=self.user_id,
                conversation_id=self.conversation_id,
                query=self.query,
            )
        except Exception:
            logger.exception(f"Strategy {strategy.name} failed; continuing without it")
            return EmptyResult()

    @staticmethod
    def _merge(context: Context, result: StrategyResult) -> None:
        if isinstance(result, Messages):
            if result.category == MessageCategory.RECENT:
                context.recent_messages.extend(result.lines)
            elif result.category == MessageCategory.SEMANTIC:
                context.semantic_messages.extend(result.lines)
        elif isinstance(result, Preferences):
            context.user_preferences = result.summary
        elif not isinstance(result, EmptyResult):
            logger.debug(f"Ignoring unknown strategy result {type(result).__name__}")

    def _truncate(self, context: Context) -> None:
        budget = self.token_budget
        total = context.estimated_tokens()

        while total > budget and context.semantic_messages:
            total -= estimate_tokens(context.semantic_messages.pop())
            context.metadata.dropped_semantic += 1

        while total > budget and context.recent_messages:
            total -= estimate_tokens(context.recent_messages.pop(0))
            context.metadata.dropped_recent += 1

        if total > budget:
            logger.warning(
                f"Context is {total} tokens after truncation, over the budget of {budget}; "
                "system message and preferences are never dropped"
            )

        if context.metadata.dropped_semantic or context.metadata.dropped_recent:
            logger.info(
                f"Truncated context to {total} tokens: dropped {context.metadata.dropped_semantic} semantic "
                f"and {context.metadata.dropped_recent} recent lines"
            )

    async def build(self) -> Context:
        """Run every strategy in order and assemble the context."""
        started = time.perf_counter()
        context = Context(
            system_message=self.system_message,
            metadata=ContextMetadata(
                user_id=self.user_id,
                conversation_id=self.conversation_id,
                token_budget=self.token_budget,
            ),
        )

        for strategy in self.strategies:
            result = await self._run_strategy(strategy)
            logger.debug(f"Strategy {strategy.name} returned {type(result).__name__}")
            self._merge(context, result)

        self._truncate(context)

        context.metadata.total_tokens = context.estimated_tokens()
        context.metadata.message_count = len(context.recent_messages) + len(context.semantic_messages)
        context.metadata.build_ms = (time.perf_counter() - started) * 1000
        logger.debug(
            f"Built context for user={self.user_id} conversation={self.conversation_id}: "
            f"{context.metadata.message_count} messages, {context.metadata.total_tokens} tokens"
        )
        return context


def create_strategies(config: "ContextConfig") -> List[ContextStrategy]:
    """Strategies named in the configuration, in configured order."""
    factories = {
        "recent": lambda: RecentMessagesStrategy(limit=config.recent_limit),
        "semantic": lambda: SemanticSearchStrategy(limit=config.semantic_limit, min_score=config.min_score),
        "preferences": lambda: UserPreferencesStrategy(max_preferences=config.max_preferences),
    }
    return [factories[name]() for name in config.strategies]


def create_context_builder(
    config: "ContextConfig",
    store: MemoryStore,
    embedder: Optional[EmbeddingProvider] = None,
    recent_store: Optional[MemoryStore] = None,
) -> ContextBuilder:
    """Builder preloaded with the configured strategies, budget and system message."""
    builder = (
        ContextBuilder(store, embedder, token_budget=config.token_budget)
        .with_strategies(create_strategies(config))
        .with_system_message(config.system_message)
    )
    if recent_store is not None:
        builder.with_recent_store(recent_store)
    return builder

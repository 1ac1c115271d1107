"""Context assembly: retrieval strategies, the builder and prompt formatting."""

from .builder import Context, ContextBuilder, ContextMetadata, create_context_builder, estimate_tokens
from .prompt import ChatMessage, MessageRole, format_as_messages, format_prompt
from .results import EMPTY, EmptyResult, MessageCategory, Messages, Preferences, StrategyResult
from .strategies import (
    ContextStrategy,
    RecentMessagesStrategy,
    SemanticSearchStrategy,
    StoreKind,
    UserPreferencesStrategy,
)

__all__ = [
    "EMPTY",
    "ChatMessage",
    "Context",
    "ContextBuilder",
    "ContextMetadata",
    "ContextStrategy",
    "EmptyResult",
    "MessageCategory",
    "MessageRole",
    "Messages",
    "Preferences",
    "RecentMessagesStrategy",
    "SemanticSearchStrategy",
    "StoreKind",
    "StrategyResult",
    "UserPreferencesStrategy",
    "create_context_builder",
    "estimate_tokens",
    "format_as_messages",
    "format_prompt",
]

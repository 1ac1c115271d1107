"""Persist chat turns as memory entries.

This is the seam between a chat transport and the memory store: call
:meth:`MemoryRecorder.record_user_message` before answering and
:meth:`MemoryRecorder.record_assistant_reply` afterwards. Recording never
raises; a turn that cannot be saved is logged and skipped.
"""

import logging
from typing import Optional

from kioku.context.builder import estimate_tokens
from kioku.exceptions import EmbeddingUnavailableError, StoreError
from kioku.memory.embeddings import EmbeddingProvider
from kioku.memory.schema import MemoryEntry, MemoryMetadata, MemoryRole
from kioku.memory.store import MemoryStore

logger = logging.getLogger(__name__)


class MemoryRecorder:
    """Writes user messages and assistant replies to a store."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: Optional[EmbeddingProvider] = None,
        save_user_messages: bool = True,
        save_assistant_replies: bool = True,
    ):
        self.store = store
        self.embedder = embedder
        self.save_user_messages = save_user_messages
        self.save_assistant_replies = save_assistant_replies

    async def record(
        self,
        content: str,
        role: MemoryRole,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Optional[MemoryEntry]:
        """Store one message.

        The entry is embedded when a provider is configured. If embedding
        fails the entry is stored without a vector (it still shows up in
        recent messages, just not in semantic search).

        Returns:
            The stored entry, or None if the content was blank or the store failed
        """
        if not content or not content.strip():
            return None

        entry = MemoryEntry(
            content=content,
            metadata=MemoryMetadata(
                user_id=user_id,
                conversation_id=conversation_id,
                role=role,
                token_count=estimate_tokens(content),
            ),
        )

        if self.embedder is not None:
            try:
                entry.embedding = await self.embedder.embed(content)
            except EmbeddingUnavailableError as e:
                logger.warning(f"Storing message without embedding: {e}")

        try:
            await self.store.add(entry)
        except StoreError as e:
            logger.error(f"Failed to save {role.value.lower()} message to memory: {e}")
            return None

        logger.debug(f"Saved {role.value.lower()} message {entry.id} (user={user_id}, conversation={conversation_id})")
        return entry

    async def record_user_message(
        self, content: str, user_id: Optional[str] = None, conversation_id: Optional[str] = None
    ) -> Optional[MemoryEntry]:
        if not self.save_user_messages:
            return None
        return await self.record(content, MemoryRole.USER, user_id=user_id, conversation_id=conversation_id)

    async def record_assistant_reply(
        self, content: str, user_id: Optional[str] = None, conversation_id: Optional[str] = None
    ) -> Optional[MemoryEntry]:
        if not self.save_assistant_replies:
            return None
        return await self.record(content, MemoryRole.ASSISTANT, user_id=user_id, conversation_id=conversation_id)

"""Conversation-scoped view over a memory store."""

import dataclasses
from typing import List, Optional, Sequence

from kioku.memory.schema import MemoryEntry, ScoredEntry
from kioku.memory.store import EntryId, MemoryStore


class ChatScopedStore(MemoryStore):
    """Restricts a shared store to one conversation.

    Writes are stamped with the conversation id, and conversation listing and
    search ignore whatever conversation the caller asks for. Hand this to code
    that must not read or write other chats.
    """

    def __init__(self, inner: MemoryStore, conversation_id: str):
        super().__init__(embedding_dim=inner.embedding_dim, search_config=inner.search_config)
        self.inner = inner
        self.conversation_id = conversation_id

    @property
    def backend_name(self) -> str:
        return self.inner.backend_name

    def _pin(self, entry: MemoryEntry) -> MemoryEntry:
        metadata = dataclasses.replace(entry.metadata, conversation_id=self.conversation_id)
        return dataclasses.replace(entry, metadata=metadata)

    async def add(self, entry: MemoryEntry) -> None:
        await self.inner.add(self._pin(entry))

    async def get(self, entry_id: EntryId) -> Optional[MemoryEntry]:
        return await self.inner.get(entry_id)

    async def update(self, entry: MemoryEntry) -> None:
        await self.inner.update(self._pin(entry))

    async def delete(self, entry_id: EntryId) -> bool:
        return await self.inner.delete(entry_id)

    async def list_by_user(self, user_id: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        return await self.inner.list_by_user(user_id, limit=limit)

    async def list_by_conversation(self, conversation_id: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        return await self.inner.list_by_conversation(self.conversation_id, limit=limit)

    async def semantic_search(
        self,
        query_vector: Sequence[float],
        limit: int,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> List[ScoredEntry]:
        return await self.inner.semantic_search(
            query_vector, limit, user_id=user_id, conversation_id=self.conversation_id
        )

    async def list_all(self) -> List[MemoryEntry]:
        return await self.inner.list_by_conversation(self.conversation_id)

    async def count(self) -> int:
        return len(await self.list_all())

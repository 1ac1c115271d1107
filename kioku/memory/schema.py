"""Memory data structures."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class MemoryRole(Enum):
    """Role of the message sender. Values double as display labels."""

    USER = "User"
    ASSISTANT = "Assistant"
    SYSTEM = "System"

    @classmethod
    def parse(cls, value: str) -> "MemoryRole":
        """Parse a role label case-insensitively ("user", "User", "ASSISTANT")."""
        for role in cls:
            if role.value.lower() == value.strip().lower():
                return role
        raise ValueError(f"Unknown memory role: {value!r}")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp, assuming UTC when no offset is present."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class MemoryMetadata:
    """Scope and bookkeeping attached to a memory entry."""

    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    role: MemoryRole = MemoryRole.USER
    timestamp: datetime = field(default_factory=utc_now)
    token_count: Optional[int] = None
    importance: Optional[float] = None  # 0.0-1.0, advisory

    def __post_init__(self):
        # Naive timestamps are taken as UTC so entries always sort together
        if self.timestamp.tzinfo is None:
            self.timestamp = self.timestamp.replace(tzinfo=timezone.utc)


@dataclass
class MemoryEntry:
    """One stored conversational fact.

    The embedding is absent until an embedding step populates it. Updates
    replace the whole entry; the id never changes.
    """

    content: str
    metadata: MemoryMetadata = field(default_factory=MemoryMetadata)
    embedding: Optional[List[float]] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    @property
    def role(self) -> MemoryRole:
        return self.metadata.role

    @property
    def timestamp(self) -> datetime:
        return self.metadata.timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "content": self.content,
            "embedding": self.embedding,
            "metadata": {
                "user_id": self.metadata.user_id,
                "conversation_id": self.metadata.conversation_id,
                "role": self.metadata.role.value,
                "timestamp": self.metadata.timestamp.isoformat(),
                "token_count": self.metadata.token_count,
                "importance": self.metadata.importance,
            },
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MemoryEntry":
        meta = d.get("metadata", {})
        embedding = d.get("embedding")
        return cls(
            id=uuid.UUID(d["id"]),
            content=d["content"],
            embedding=[float(x) for x in embedding] if embedding is not None else None,
            metadata=MemoryMetadata(
                user_id=meta.get("user_id"),
                conversation_id=meta.get("conversation_id"),
                role=MemoryRole.parse(meta.get("role", "User")),
                timestamp=parse_timestamp(meta["timestamp"]) if meta.get("timestamp") else utc_now(),
                token_count=meta.get("token_count"),
                importance=meta.get("importance"),
            ),
        )


@dataclass
class ScoredEntry:
    """A single search hit. Score is normalized: higher means more similar."""

    score: float
    entry: MemoryEntry


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO string, so lexical order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")

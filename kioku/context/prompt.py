"""Prompt formatting for assembled contexts.

Fixed section headers let the model tell ongoing conversation apart from
retrieved reference material and from the question it should answer. All
functions here are pure.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from kioku.context.builder import Context

DEFAULT_SYSTEM_MESSAGE = "You are a helpful assistant."

PREFERENCES_LABEL = "User Preferences:"
SECTION_RECENT = "Conversation (recent):"
SECTION_SEMANTIC = "Relevant reference (semantic):"
SECTION_QUESTION = "Current question:"


class MessageRole(Enum):
    """Chat-completion message role."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ChatMessage:
    """One message for a chat-completion API."""

    role: MessageRole
    content: str

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(MessageRole.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(MessageRole.USER, content)

    @classmethod
    def assistant(cls, content: str) -> "ChatMessage":
        return cls(MessageRole.ASSISTANT, content)

    def to_dict(self) -> Dict[str, str]:
        """OpenAI/litellm style ``{"role": ..., "content": ...}``."""
        return {"role": self.role.value, "content": self.content}


def _context_block(
    user_preferences: Optional[str],
    recent_messages: Sequence[str],
    semantic_messages: Sequence[str],
) -> str:
    parts = []
    if user_preferences:
        parts.append(f"{PREFERENCES_LABEL} {user_preferences}\n")
    if recent_messages:
        parts.append("\n".join([SECTION_RECENT, *recent_messages]) + "\n")
    if semantic_messages:
        parts.append("\n".join([SECTION_SEMANTIC, *semantic_messages]) + "\n")
    return "\n".join(parts)


def format_for_model(
    include_system: bool,
    system_message: Optional[str],
    user_preferences: Optional[str],
    recent_messages: Sequence[str],
    semantic_messages: Sequence[str],
) -> str:
    """Render context sections as one text block.

    Sections appear in a fixed order (system, preferences, recent, semantic),
    separated by blank lines. Empty sections are omitted entirely.
    """
    block = _context_block(user_preferences, recent_messages, semantic_messages)
    if include_system and system_message:
        header = f"System: {system_message}\n"
        return f"{header}\n{block}" if block else header
    return block


def format_prompt(context: "Context", question: str) -> str:
    """Context block followed by the current question, as a single string."""
    block = context.format_for_model(include_system=True)
    question_section = f"{SECTION_QUESTION}\n{question}\n"
    return f"{block}\n{question_section}" if block else question_section


def format_as_messages(context: "Context", question: str) -> List[ChatMessage]:
    """Render a context and question as chat messages.

    Produces the system message (if any), one user message carrying the
    retrieved context (if any), and the question as the final user message.
    """
    messages = []
    if context.system_message:
        messages.append(ChatMessage.system(context.system_message))

    block = _context_block(context.user_preferences, context.recent_messages, context.semantic_messages)
    if block:
        messages.append(ChatMessage.user(block))

    messages.append(ChatMessage.user(question))
    return messages


def parse_message_line(line: str) -> Optional[ChatMessage]:
    """Parse a ``"Role: content"`` line back into a message.

    Returns:
        The message, or None for blank lines and unknown roles
    """
    line = line.strip()
    if not line:
        return None
    for prefix, role in (
        ("User:", MessageRole.USER),
        ("Assistant:", MessageRole.ASSISTANT),
        ("System:", MessageRole.SYSTEM),
    ):
        if line.startswith(prefix):
            return ChatMessage(role, line[len(prefix):].strip())
    return None

"""Tests for prompt formatting."""

import pytest

from kioku.context.builder import Context
from kioku.context.prompt import (
    SECTION_QUESTION,
    SECTION_RECENT,
    SECTION_SEMANTIC,
    ChatMessage,
    MessageRole,
    format_as_messages,
    format_for_model,
    format_prompt,
    parse_message_line,
)


@pytest.fixture
def full_context():
    return Context(
        system_message="You are a helpful assistant.",
        user_preferences="I like tea",
        recent_messages=["User: hi", "Assistant: hello"],
        semantic_messages=["User: tea is great"],
    )


class TestFormatForModel:
    """Tests for the single-block format."""

    def test_all_sections(self):
        text = format_for_model(
            True,
            "Be brief.",
            "I like tea",
            ["User: hi", "Assistant: hello"],
            ["User: tea is great"],
        )

        assert text == (
            "System: Be brief.\n"
            "\n"
            "User Preferences: I like tea\n"
            "\n"
            "Conversation (recent):\n"
            "User: hi\n"
            "Assistant: hello\n"
            "\n"
            "Relevant reference (semantic):\n"
            "User: tea is great\n"
        )

    def test_empty_sections_are_omitted(self):
        text = format_for_model(False, "ignored", None, ["User: hi"], [])

        assert text == f"{SECTION_RECENT}\nUser: hi\n"
        assert SECTION_SEMANTIC not in text
        assert "System" not in text

    def test_nothing_to_format(self):
        assert format_for_model(True, None, None, [], []) == ""

    def test_deterministic(self, full_context):
        assert full_context.format_for_model() == full_context.format_for_model()


class TestFormatPrompt:
    """Tests for the flat prompt with question."""

    def test_question_comes_last(self, full_context):
        text = format_prompt(full_context, "Which tea?")

        assert text.endswith(f"{SECTION_QUESTION}\nWhich tea?\n")
        assert text.index(SECTION_RECENT) < text.index(SECTION_SEMANTIC) < text.index(SECTION_QUESTION)

    def test_empty_context_has_only_question(self):
        assert format_prompt(Context(), "Hello?") == f"{SECTION_QUESTION}\nHello?\n"


class TestFormatAsMessages:
    """Tests for chat-message output."""

    def test_full_context(self, full_context):
        messages = format_as_messages(full_context, "Which tea?")

        assert [m.role for m in messages] == [MessageRole.SYSTEM, MessageRole.USER, MessageRole.USER]
        assert messages[0].content == "You are a helpful assistant."
        assert messages[1].content.startswith("User Preferences: I like tea\n")
        assert SECTION_RECENT in messages[1].content
        assert SECTION_SEMANTIC in messages[1].content
        assert messages[2] == ChatMessage.user("Which tea?")

    def test_empty_context_is_just_the_question(self):
        messages = format_as_messages(Context(), "Hello?")

        assert messages == [ChatMessage.user("Hello?")]

    def test_to_dict(self):
        assert ChatMessage.assistant("ok").to_dict() == {"role": "assistant", "content": "ok"}


class TestParseMessageLine:
    """Tests for parsing formatted lines."""

    @pytest.mark.parametrize(
        "line,role,content",
        [
            ("User: hello", MessageRole.USER, "hello"),
            ("Assistant:  hi there ", MessageRole.ASSISTANT, "hi there"),
            ("  System: be nice", MessageRole.SYSTEM, "be nice"),
        ],
    )
    def test_known_roles(self, line, role, content):
        assert parse_message_line(line) == ChatMessage(role, content)

    @pytest.mark.parametrize("line", ["", "   ", "Narrator: once upon a time", "no prefix"])
    def test_unparseable(self, line):
        assert parse_message_line(line) is None

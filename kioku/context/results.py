"""Result types returned by context strategies.

A strategy returns exactly one of :class:`Messages`, :class:`Preferences` or
:class:`EmptyResult`. The builder dispatches on the concrete type.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple, Union


class MessageCategory(Enum):
    """Which context bucket a block of message lines belongs to."""

    RECENT = "recent"
    SEMANTIC = "semantic"


@dataclass(frozen=True)
class Messages:
    """Formatted ``"Role: content"`` lines for one bucket."""

    category: MessageCategory
    lines: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "lines", tuple(self.lines))


@dataclass(frozen=True)
class Preferences:
    """Single summary line of user preferences."""

    summary: str


@dataclass(frozen=True)
class EmptyResult:
    """Nothing relevant, or the strategy degraded after a failure."""


EMPTY = EmptyResult()

StrategyResult = Union[Messages, Preferences, EmptyResult]

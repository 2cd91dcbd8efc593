"""Data models for the detector module."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum


class SignalKind(str, Enum):
    """How a signal's pattern is matched against message content."""

    KEYWORD = "keyword"
    PHRASE = "phrase"
    REGEX = "regex"
    CUSTOM = "custom"


@dataclass(frozen=True)
class SignalDefinition:
    """A user-defined content-matching rule.

    Attributes:
        signal_id: Unique identifier assigned by the store.
        pattern: Keyword, phrase or regular expression to look for.
        kind: Matching strategy for the pattern.
        category: Optional free-form grouping label.
        priority: Informational priority, carried onto alerts.
        is_active: Whether the signal takes part in evaluation.
        created_at: When the signal was defined.
    """

    signal_id: int
    pattern: str
    kind: SignalKind = SignalKind.KEYWORD
    category: str | None = None
    priority: int = 0
    is_active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def with_active(self, active: bool) -> SignalDefinition:
        """Return a copy with the activation flag set."""
        return replace(self, is_active=active)

    def to_dict(self) -> dict[str, object]:
        """Serialize to a dictionary."""
        return {
            "signal_id": self.signal_id,
            "pattern": self.pattern,
            "kind": self.kind.value,
            "category": self.category,
            "priority": self.priority,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class SignalMatch:
    """Record of one signal firing against one message.

    Attributes:
        match_id: Identifier assigned by the detection engine, monotonic per engine.
        signal_id: The signal that matched.
        message_id: The message that was matched.
        chat_id: The chat the message belongs to.
        context: Snippet of content surrounding the match.
        matched_at: When the match was detected.
    """

    match_id: int
    signal_id: int
    message_id: int
    chat_id: int
    context: str | None
    matched_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def display_text(self) -> str:
        """Return the context snippet, or a generic label when absent."""
        return self.context or "Signal match detected"

    def to_dict(self) -> dict[str, object]:
        """Serialize to a dictionary."""
        return {
            "match_id": self.match_id,
            "signal_id": self.signal_id,
            "message_id": self.message_id,
            "chat_id": self.chat_id,
            "context": self.context,
            "matched_at": self.matched_at.isoformat(),
        }

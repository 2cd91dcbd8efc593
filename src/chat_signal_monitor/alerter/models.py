"""Data models for the alerter module."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from chat_signal_monitor.detector.models import SignalMatch


@dataclass
class Alert:
    """A user-facing notification derived from a signal match.

    Only ``is_read`` changes after creation, and only through the
    ``AlertManager``.

    Attributes:
        match: The originating match, held by value.
        message: Display message supplied when the alert was raised.
        priority: Alert priority.
        is_read: Whether the operator has seen the alert.
        alert_id: Unique identifier for this alert.
        created_at: When the alert was raised.
    """

    match: SignalMatch
    message: str
    priority: int = 1
    is_read: bool = False
    alert_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def signal_id(self) -> int:
        """Return the id of the signal that produced this alert."""
        return self.match.signal_id

    @property
    def display_title(self) -> str:
        return "Signal Detected"

    @property
    def display_message(self) -> str:
        """Return the match context, falling back to the alert message."""
        return self.match.context or self.message

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary."""
        return {
            "alert_id": self.alert_id,
            "signal_id": self.signal_id,
            "match_id": self.match.match_id,
            "message_id": self.match.message_id,
            "chat_id": self.match.chat_id,
            "message": self.message,
            "display_message": self.display_message,
            "priority": self.priority,
            "is_read": self.is_read,
            "created_at": self.created_at.isoformat(),
        }

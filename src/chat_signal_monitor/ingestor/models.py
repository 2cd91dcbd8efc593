"""Data models for the ingestor module."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or Unix seconds into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, int | float):
        try:
            return datetime.fromtimestamp(value, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


@dataclass(frozen=True)
class Message:
    """A chat message delivered by the upstream message source.

    The monitor never mutates messages; it only reads their content.

    Attributes:
        message_id: Identifier of the message within the messaging backend.
        chat_id: Identifier of the chat the message belongs to.
        sender_id: Identifier of the sending user, if known.
        content: Text content evaluated against signals.
        timestamp: When the message was sent.
        is_outgoing: Whether the message was sent by the local account.
        edit_date: When the message was last edited, if ever.
    """

    message_id: int
    chat_id: int
    content: str
    timestamp: datetime
    sender_id: int | None = None
    is_outgoing: bool = False
    edit_date: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Create a Message from a decoded JSON object.

        Accepts either ``message_id`` or ``id`` for the identifier and either
        ``content`` or ``text`` for the body.

        Raises:
            ValueError: If a required field is missing or malformed.
        """
        raw_id = data.get("message_id", data.get("id"))
        if raw_id is None:
            raise ValueError("message is missing 'message_id'")
        if "chat_id" not in data:
            raise ValueError("message is missing 'chat_id'")

        content = data.get("content", data.get("text"))
        if content is None:
            raise ValueError("message is missing 'content'")

        sender = data.get("sender_id")
        timestamp = _parse_timestamp(data.get("timestamp")) or datetime.now(UTC)

        try:
            return cls(
                message_id=int(raw_id),
                chat_id=int(data["chat_id"]),
                content=str(content),
                timestamp=timestamp,
                sender_id=int(sender) if sender is not None else None,
                is_outgoing=bool(data.get("is_outgoing", False)),
                edit_date=_parse_timestamp(data.get("edit_date")),
            )
        except (TypeError, ValueError, OverflowError) as e:
            raise ValueError(f"malformed message: {e}") from e

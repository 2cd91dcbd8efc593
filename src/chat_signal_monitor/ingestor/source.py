"""Message sources feeding the monitor.

The real messaging backend lives outside this package; it only has to
deliver ``Message`` values as an async iterator. ``JsonLinesSource`` reads
messages from a JSON-lines stream, one object per line, which is enough for
replaying exports and for piping messages in from another process.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import IO, Protocol

from chat_signal_monitor.ingestor.models import Message

logger = logging.getLogger(__name__)


class MessageSource(Protocol):
    """Anything that yields chat messages one at a time."""

    def __aiter__(self) -> AsyncIterator[Message]:
        ...


@dataclass
class SourceStats:
    """Statistics about a message source."""

    lines_read: int = 0
    messages_parsed: int = 0
    lines_skipped: int = 0


class JsonLinesSource:
    """Reads messages from a text stream containing one JSON object per line.

    Blank lines are ignored; lines that are not valid JSON objects or that
    lack required message fields are logged and skipped.

    Example:
        >>> with open("messages.jsonl") as fh:
        ...     async for message in JsonLinesSource(fh):
        ...         await pipeline.process_message(message)
    """

    def __init__(self, stream: IO[str]) -> None:
        """Initialize the source.

        Args:
            stream: Text stream to read from.
        """
        self._stream = stream
        self._stats = SourceStats()

    @property
    def stats(self) -> SourceStats:
        """Source statistics."""
        return self._stats

    async def __aiter__(self) -> AsyncIterator[Message]:
        while True:
            line = await asyncio.to_thread(self._stream.readline)
            if not line:
                break
            self._stats.lines_read += 1
            if not line.strip():
                continue

            message = self._parse_line(line)
            if message is None:
                self._stats.lines_skipped += 1
                continue
            self._stats.messages_parsed += 1
            yield message

    def _parse_line(self, line: str) -> Message | None:
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Skipping line %d: invalid JSON (%s)", self._stats.lines_read, e)
            return None

        if not isinstance(data, dict):
            logger.warning("Skipping line %d: expected a JSON object", self._stats.lines_read)
            return None

        try:
            return Message.from_dict(data)
        except ValueError as e:
            logger.warning("Skipping line %d: %s", self._stats.lines_read, e)
            return None

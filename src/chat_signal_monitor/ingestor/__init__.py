"""Ingestion layer - chat messages entering the monitor."""

from chat_signal_monitor.ingestor.models import Message
from chat_signal_monitor.ingestor.source import JsonLinesSource, MessageSource, SourceStats

__all__ = [
    "JsonLinesSource",
    "Message",
    "MessageSource",
    "SourceStats",
]

"""Persistence layer - SQL storage for signals and matches."""

from chat_signal_monitor.storage.database import create_engine, create_session_factory, init_schema
from chat_signal_monitor.storage.models import Base, SignalMatchModel, SignalModel
from chat_signal_monitor.storage.repos import (
    SignalMatchDTO,
    SignalMatchRepository,
    SignalRepository,
    SqlSignalStore,
)

__all__ = [
    "Base",
    "SignalMatchDTO",
    "SignalMatchModel",
    "SignalMatchRepository",
    "SignalModel",
    "SignalRepository",
    "SqlSignalStore",
    "create_engine",
    "create_session_factory",
    "init_schema",
]

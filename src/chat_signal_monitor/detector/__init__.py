"""Detection layer - signal evaluation against incoming messages."""

from chat_signal_monitor.detector.engine import (
    DetectionEngine,
    EngineStats,
    MatchCallback,
    SignalStore,
    StoreError,
)
from chat_signal_monitor.detector.matching import (
    EmptyPatternError,
    InvalidPatternError,
    SignalValidationError,
    extract_context,
    validate_signal,
)
from chat_signal_monitor.detector.models import SignalDefinition, SignalKind, SignalMatch

__all__ = [
    "DetectionEngine",
    "EmptyPatternError",
    "EngineStats",
    "InvalidPatternError",
    "MatchCallback",
    "SignalDefinition",
    "SignalKind",
    "SignalMatch",
    "SignalStore",
    "SignalValidationError",
    "StoreError",
    "extract_context",
    "validate_signal",
]

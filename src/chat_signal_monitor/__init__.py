"""Chat Signal Monitor - rule-based detection and alerting for chat messages."""

__version__ = "0.1.0"

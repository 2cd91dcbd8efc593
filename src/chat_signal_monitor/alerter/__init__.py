"""Alerting layer - bounded, read-tracked alert feed."""

from chat_signal_monitor.alerter.manager import AlertManager, FeedCallback
from chat_signal_monitor.alerter.models import Alert

__all__ = [
    "Alert",
    "AlertManager",
    "FeedCallback",
]

"""Alert feed management.

The ``AlertManager`` turns signal matches into a bounded, newest-first feed
of alerts with read tracking. It is the single owner of the feed and its
unread counter; every mutation runs under one lock and re-establishes
``unread_count == number of unread alerts`` before listeners are notified.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace

from chat_signal_monitor.alerter.models import Alert
from chat_signal_monitor.detector.models import SignalMatch

logger = logging.getLogger(__name__)

DEFAULT_MAX_ALERTS = 500
DEFAULT_ALERT_PRIORITY = 1

FeedCallback = Callable[[tuple[Alert, ...], int], Awaitable[None]]


class AlertManager:
    """Maintains the alert feed and its unread counter.

    Alerts handed out by the manager are copies; read state changes only
    through ``mark_read``/``mark_all_read``.
    """

    def __init__(self, *, max_alerts: int = DEFAULT_MAX_ALERTS) -> None:
        """Initialize the alert manager.

        Args:
            max_alerts: Maximum number of alerts kept in the feed.
        """
        if max_alerts < 1:
            raise ValueError("max_alerts must be at least 1")

        self.max_alerts = max_alerts
        self._lock = asyncio.Lock()
        self._alerts: list[Alert] = []
        self._unread_count = 0
        self._listeners: list[FeedCallback] = []

    @property
    def alerts(self) -> tuple[Alert, ...]:
        """Snapshot of the feed, newest first."""
        return tuple(replace(a) for a in self._alerts)

    @property
    def unread_count(self) -> int:
        """Number of alerts not yet marked read."""
        return self._unread_count

    def subscribe(self, callback: FeedCallback) -> None:
        """Register an async callback invoked after every feed mutation."""
        self._listeners.append(callback)

    def alerts_for_signal(self, signal_id: int) -> tuple[Alert, ...]:
        """Return alerts raised by a signal, in feed order."""
        return tuple(replace(a) for a in self._alerts if a.signal_id == signal_id)

    async def handle_match(
        self,
        match: SignalMatch,
        display_message: str,
        *,
        priority: int = DEFAULT_ALERT_PRIORITY,
    ) -> Alert:
        """Raise an alert for a signal match.

        Call once per match. The alert goes to the head of the feed; when
        the feed exceeds ``max_alerts`` the oldest alerts are dropped.

        Args:
            match: The match to alert on.
            display_message: Message shown when the match has no context.
            priority: Alert priority.

        Returns:
            A copy of the new alert.
        """
        alert = Alert(match=match, message=display_message, priority=priority)
        async with self._lock:
            self._alerts.insert(0, alert)
            self._unread_count += 1
            if len(self._alerts) > self.max_alerts:
                dropped = len(self._alerts) - self.max_alerts
                del self._alerts[self.max_alerts :]
                self._recount()
                logger.debug("Dropped %d oldest alert(s) from feed", dropped)
            snapshot = replace(alert)

        logger.info("Alert %s raised for signal %d", alert.alert_id, match.signal_id)
        await self._notify()
        return snapshot

    async def mark_read(self, alert_id: str) -> bool:
        """Mark an alert read. Unknown ids and repeated calls are no-ops.

        Returns:
            True if the alert exists.
        """
        async with self._lock:
            alert = self._find(alert_id)
            if alert is None:
                return False
            alert.is_read = True
            self._recount()
        await self._notify()
        return True

    async def mark_all_read(self) -> None:
        """Mark every alert in the feed read."""
        async with self._lock:
            for alert in self._alerts:
                alert.is_read = True
            self._recount()
        await self._notify()

    async def delete_alert(self, alert_id: str) -> bool:
        """Delete an alert. Unknown ids are ignored.

        Returns:
            True if an alert was removed.
        """
        async with self._lock:
            before = len(self._alerts)
            self._alerts = [a for a in self._alerts if a.alert_id != alert_id]
            removed = len(self._alerts) != before
            if removed:
                self._recount()
        if removed:
            await self._notify()
        return removed

    async def clear_all(self) -> None:
        """Remove every alert and reset the unread counter."""
        async with self._lock:
            self._alerts.clear()
            self._unread_count = 0
        logger.info("Alert feed cleared")
        await self._notify()

    def _find(self, alert_id: str) -> Alert | None:
        for alert in self._alerts:
            if alert.alert_id == alert_id:
                return alert
        return None

    def _recount(self) -> None:
        self._unread_count = sum(1 for a in self._alerts if not a.is_read)

    async def _notify(self) -> None:
        """Invoke feed subscribers, logging their failures."""
        if not self._listeners:
            return
        alerts = self.alerts
        unread = self._unread_count
        for callback in self._listeners:
            try:
                await callback(alerts, unread)
            except Exception as e:
                logger.error("Error in alert feed callback: %s", e)

"""Processing pipeline connecting messages, detection and alerting.

Each message flows through a fixed sequence:
1) Evaluate against every active signal (``DetectionEngine.check_message``)
2) Record each match in the store (inside the engine, best-effort)
3) Raise one alert per match (``AlertManager.handle_match``)

The pipeline owns the database engine only when it builds the store itself;
collaborators passed in by the caller are used as-is.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from chat_signal_monitor.alerter.manager import DEFAULT_ALERT_PRIORITY, AlertManager
from chat_signal_monitor.detector.engine import DetectionEngine, SignalStore
from chat_signal_monitor.storage.database import (
    create_engine,
    create_session_factory,
    init_schema,
)
from chat_signal_monitor.storage.repos import SqlSignalStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from chat_signal_monitor.config import Settings
    from chat_signal_monitor.detector.models import SignalMatch
    from chat_signal_monitor.ingestor.models import Message
    from chat_signal_monitor.ingestor.source import MessageSource

logger = logging.getLogger(__name__)


class Pipeline:
    """Wires a message source to the detection engine and the alert feed.

    Example:
        >>> pipeline = Pipeline(settings)
        >>> await pipeline.start()
        >>> await pipeline.process_message(message)
        >>> await pipeline.stop()
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: SignalStore | None = None,
        engine: DetectionEngine | None = None,
        alert_manager: AlertManager | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings.
            store: Signal store. Built from ``settings.database`` when omitted
                and no engine is given.
            engine: Detection engine. Built from settings when omitted.
            alert_manager: Alert manager. Built from settings when omitted.
        """
        self._settings = settings
        self._db_engine: AsyncEngine | None = None

        if store is None and engine is None:
            self._db_engine = create_engine(settings.database.url)
            store = SqlSignalStore(create_session_factory(self._db_engine))

        self.store = store
        self.engine = engine or DetectionEngine(
            store,
            recent_match_limit=settings.detection.recent_match_limit,
            context_chars=settings.detection.context_chars,
            persist_timeout_seconds=settings.detection.persist_timeout_seconds,
        )
        self.alert_manager = alert_manager or AlertManager(
            max_alerts=settings.alerts.max_alerts
        )

        self._running = False
        self._stop_event = asyncio.Event()
        self._messages_processed = 0

    @property
    def is_running(self) -> bool:
        """Whether the pipeline has been started and not stopped."""
        return self._running

    @property
    def messages_processed(self) -> int:
        """Number of messages processed since start."""
        return self._messages_processed

    async def start(self) -> None:
        """Prepare the schema (when owned) and load persisted signals."""
        if self._running:
            return

        if self._db_engine is not None:
            await init_schema(self._db_engine)

        loaded = await self.engine.load_signals()
        self._running = True
        self._stop_event.clear()
        logger.info(
            "Pipeline started with %d stored signal(s), %d active",
            loaded,
            len(self.engine.active_signals()),
        )

    async def stop(self) -> None:
        """Stop consuming messages and release owned resources. Idempotent."""
        self._stop_event.set()
        if not self._running and self._db_engine is None:
            return

        self._running = False
        if self._db_engine is not None:
            await self._db_engine.dispose()
            self._db_engine = None
        logger.info("Pipeline stopped after %d message(s)", self._messages_processed)

    async def process_message(self, message: Message) -> list[SignalMatch]:
        """Run one message through detection and alerting.

        Returns:
            The matches found for the message.
        """
        found = await self.engine.check_message(message)
        for match in found:
            signal = self.engine.get_signal(match.signal_id)
            priority = (signal.priority if signal is not None else 0) or DEFAULT_ALERT_PRIORITY
            await self.alert_manager.handle_match(match, message.content, priority=priority)
        self._messages_processed += 1
        return found

    async def run(self, source: MessageSource) -> int:
        """Consume a message source until it is exhausted or ``stop`` is called.

        Returns:
            Number of messages processed from this source.
        """
        processed = 0
        async for message in source:
            if self._stop_event.is_set():
                logger.info("Stop requested, leaving message source")
                break
            await self.process_message(message)
            processed += 1
        return processed

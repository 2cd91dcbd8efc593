"""Detection engine - evaluates chat messages against the active signal set.

The engine owns the in-memory signal set and a bounded buffer of recent
matches. Every match is recorded through a ``SignalStore``; recording is
best-effort and bounded by a timeout, so a slow or failing store degrades to
"matched but not yet durably recorded" instead of losing the match.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from chat_signal_monitor.detector.matching import (
    DEFAULT_CONTEXT_CHARS,
    CustomMatcher,
    SignalValidationError,
    extract_context,
    matches,
    validate_signal,
)
from chat_signal_monitor.detector.models import SignalDefinition, SignalKind, SignalMatch

if TYPE_CHECKING:
    from chat_signal_monitor.ingestor.models import Message

logger = logging.getLogger(__name__)

DEFAULT_RECENT_MATCH_LIMIT = 1000
DEFAULT_PERSIST_TIMEOUT = 5.0  # seconds


class StoreError(Exception):
    """Raised when the signal store cannot complete an operation."""


class SignalStore(Protocol):
    """Durable persistence for signals and their matches."""

    async def insert_signal(
        self,
        pattern: str,
        kind: SignalKind,
        category: str | None,
        priority: int,
    ) -> int:
        """Persist a new signal and return its identifier."""
        ...

    async def record_match(
        self,
        signal_id: int,
        message_id: int,
        chat_id: int,
        context: str | None,
    ) -> bool:
        """Persist a match record. Returns True on success."""
        ...

    async def load_active_signals(self) -> list[SignalDefinition]:
        """Return every persisted signal that is marked active."""
        ...

    async def deactivate_signal(self, signal_id: int) -> bool:
        """Mark a persisted signal inactive. Returns True if it existed."""
        ...


MatchCallback = Callable[[SignalMatch], Awaitable[None]]


@dataclass
class EngineStats:
    """Counters describing engine activity since construction."""

    messages_checked: int = 0
    matches_found: int = 0
    persist_failures: int = 0


class DetectionEngine:
    """Evaluates messages against user-defined signals.

    All mutations of the signal set and the recent-match buffer happen under
    a single lock. Evaluation works on a snapshot of the active signals, so
    concurrent messages do not block each other while matching or while
    waiting on the store.

    Example:
        >>> engine = DetectionEngine(store)
        >>> await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))
        >>> matches = await engine.check_message(message)
    """

    def __init__(
        self,
        store: SignalStore | None = None,
        *,
        recent_match_limit: int = DEFAULT_RECENT_MATCH_LIMIT,
        context_chars: int = DEFAULT_CONTEXT_CHARS,
        persist_timeout_seconds: float = DEFAULT_PERSIST_TIMEOUT,
        custom_matcher: CustomMatcher | None = None,
    ) -> None:
        """Initialize the detection engine.

        Args:
            store: Store used to persist signals and matches. Without one the
                engine works purely in memory.
            recent_match_limit: Maximum number of matches kept in memory.
            context_chars: Characters of context kept on each side of a match.
            persist_timeout_seconds: Upper bound on each store call made
                while checking a message.
            custom_matcher: Predicate used for ``custom`` signals.
        """
        if recent_match_limit < 1:
            raise ValueError("recent_match_limit must be at least 1")
        if context_chars < 0:
            raise ValueError("context_chars must not be negative")

        self._store = store
        self._context_chars = context_chars
        self._persist_timeout = persist_timeout_seconds
        self._custom_matcher = custom_matcher

        self._lock = asyncio.Lock()
        self._signals: dict[int, SignalDefinition] = {}
        self._removed_ids: set[int] = set()
        self._recent: deque[SignalMatch] = deque(maxlen=recent_match_limit)
        self._match_ids = itertools.count(1)
        self._listeners: list[MatchCallback] = []
        self._stats = EngineStats()

    @property
    def recent_matches(self) -> tuple[SignalMatch, ...]:
        """Recent matches, newest first."""
        return tuple(self._recent)

    @property
    def recent_match_limit(self) -> int:
        """Capacity of the recent-match buffer."""
        return self._recent.maxlen or 0

    @property
    def stats(self) -> EngineStats:
        """Engine activity counters."""
        return self._stats

    def subscribe(self, callback: MatchCallback) -> None:
        """Register an async callback invoked with every new match."""
        self._listeners.append(callback)

    def active_signals(self) -> tuple[SignalDefinition, ...]:
        """Return a snapshot of the active signals in insertion order."""
        return tuple(s for s in self._signals.values() if s.is_active)

    def get_signal(self, signal_id: int) -> SignalDefinition | None:
        """Return a signal by id, active or not."""
        return self._signals.get(signal_id)

    async def add_signal(self, definition: SignalDefinition) -> None:
        """Add a signal to the signal set.

        Re-adding an existing id replaces the previous definition in place.
        This does not persist the signal; use ``create_signal`` for that.

        Raises:
            SignalValidationError: If the pattern is empty, or the signal is
                an active regex that does not compile.
        """
        validate_signal(definition)
        async with self._lock:
            self._signals[definition.signal_id] = definition
            self._removed_ids.discard(definition.signal_id)
        logger.info(
            "Added %s signal %d (%r)",
            definition.kind.value,
            definition.signal_id,
            definition.pattern,
        )

    async def create_signal(
        self,
        pattern: str,
        kind: SignalKind = SignalKind.KEYWORD,
        *,
        category: str | None = None,
        priority: int = 0,
    ) -> SignalDefinition:
        """Validate, persist and activate a new signal.

        The signal is only added to the active set once the store has
        acknowledged it, so it survives a restart.

        Returns:
            The stored signal definition.

        Raises:
            SignalValidationError: If the signal is invalid.
            StoreError: If the store fails to persist it.
            RuntimeError: If the engine has no store.
        """
        if self._store is None:
            raise RuntimeError("create_signal requires a signal store")

        validate_signal(
            SignalDefinition(
                signal_id=0,
                pattern=pattern,
                kind=kind,
                category=category,
                priority=priority,
            )
        )
        signal_id = await self._store.insert_signal(pattern, kind, category, priority)
        definition = SignalDefinition(
            signal_id=signal_id,
            pattern=pattern,
            kind=kind,
            category=category,
            priority=priority,
        )
        await self.add_signal(definition)
        return definition

    async def remove_signal(self, signal_id: int) -> bool:
        """Remove a signal from the signal set.

        Removed ids are remembered so that ``load_signals`` does not bring
        them back. Unknown ids are ignored.

        Returns:
            True if a signal was removed.
        """
        async with self._lock:
            removed = self._signals.pop(signal_id, None)
            if removed is not None:
                self._removed_ids.add(signal_id)

        if removed is None:
            return False

        logger.info("Removed signal %d (%r)", signal_id, removed.pattern)
        if self._store is not None:
            try:
                await asyncio.wait_for(
                    self._store.deactivate_signal(signal_id),
                    timeout=self._persist_timeout,
                )
            except TimeoutError:
                logger.warning("Timed out deactivating signal %d in store", signal_id)
            except Exception as e:
                logger.warning("Failed to deactivate signal %d in store: %s", signal_id, e)
        return True

    async def set_active(self, signal_id: int, active: bool) -> bool:
        """Switch a signal on or off.

        Returns:
            True if the signal exists.

        Raises:
            InvalidPatternError: If activating a regex that does not compile.
        """
        async with self._lock:
            current = self._signals.get(signal_id)
            if current is None:
                return False
            updated = current.with_active(active)
            validate_signal(updated)
            self._signals[signal_id] = updated
        logger.info("Signal %d %s", signal_id, "activated" if active else "deactivated")
        return True

    async def load_signals(self) -> int:
        """Load active signals from the store.

        Signals already held in memory and signals removed during this
        session are left alone. Persisted signals that fail validation are
        skipped.

        Returns:
            Number of signals loaded.

        Raises:
            StoreError: If the store cannot be read.
        """
        if self._store is None:
            return 0

        definitions = await self._store.load_active_signals()
        loaded = 0
        async with self._lock:
            for definition in definitions:
                if definition.signal_id in self._removed_ids:
                    continue
                if definition.signal_id in self._signals:
                    continue
                try:
                    validate_signal(definition)
                except SignalValidationError as e:
                    logger.warning("Skipping stored signal %d: %s", definition.signal_id, e)
                    continue
                self._signals[definition.signal_id] = definition
                loaded += 1

        logger.info("Loaded %d signal(s) from store", loaded)
        return loaded

    async def check_message(self, message: Message) -> list[SignalMatch]:
        """Evaluate a message against every active signal.

        Each matching signal yields exactly one match. Matches are recorded
        in the store, pushed to the recent-match buffer and passed to
        subscribers. Store failures are logged and never raised.

        Args:
            message: The message to evaluate.

        Returns:
            Matches in signal insertion order.
        """
        async with self._lock:
            snapshot = [s for s in self._signals.values() if s.is_active]

        found: list[SignalMatch] = []
        for definition in snapshot:
            matched, span = matches(definition, message.content, self._custom_matcher)
            if not matched:
                continue
            found.append(
                SignalMatch(
                    match_id=next(self._match_ids),
                    signal_id=definition.signal_id,
                    message_id=message.message_id,
                    chat_id=message.chat_id,
                    context=extract_context(message.content, span, self._context_chars),
                )
            )

        self._stats.messages_checked += 1
        if not found:
            return found

        if self._store is not None:
            await asyncio.gather(*(self._record(match) for match in found))

        async with self._lock:
            # appendleft in reverse keeps the first match of this batch at the head
            for match in reversed(found):
                self._recent.appendleft(match)
        self._stats.matches_found += len(found)

        for match in found:
            logger.info(
                "Signal %d matched message %d in chat %d",
                match.signal_id,
                match.message_id,
                match.chat_id,
            )
            await self._notify(match)

        return found

    async def _record(self, match: SignalMatch) -> bool:
        """Persist a match, bounded by the persist timeout."""
        assert self._store is not None
        try:
            recorded = await asyncio.wait_for(
                self._store.record_match(
                    match.signal_id,
                    match.message_id,
                    match.chat_id,
                    match.context,
                ),
                timeout=self._persist_timeout,
            )
        except TimeoutError:
            logger.warning(
                "Timed out after %.1fs recording match %d for signal %d",
                self._persist_timeout,
                match.match_id,
                match.signal_id,
            )
            recorded = False
        except Exception as e:
            logger.warning(
                "Failed to record match %d for signal %d: %s",
                match.match_id,
                match.signal_id,
                e,
            )
            recorded = False

        if not recorded:
            self._stats.persist_failures += 1
        return recorded

    async def _notify(self, match: SignalMatch) -> None:
        """Invoke match subscribers, logging their failures."""
        for callback in self._listeners:
            try:
                await callback(match)
            except Exception as e:
                logger.error("Error in match callback: %s", e)

"""Tests for the detection engine."""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from chat_signal_monitor.detector.engine import (
    DEFAULT_RECENT_MATCH_LIMIT,
    DetectionEngine,
    StoreError,
)
from chat_signal_monitor.detector.matching import EmptyPatternError, InvalidPatternError
from chat_signal_monitor.detector.models import SignalDefinition, SignalKind, SignalMatch
from chat_signal_monitor.ingestor.models import Message

# ============================================================================
# Fixtures
# ============================================================================


def make_message(content: str, *, message_id: int = 100, chat_id: int = 42) -> Message:
    """Create a message with the given content."""
    return Message(
        message_id=message_id,
        chat_id=chat_id,
        content=content,
        timestamp=datetime.now(UTC),
        sender_id=7,
    )


@pytest.fixture
def mock_store() -> MagicMock:
    """Create a mock signal store."""
    store = MagicMock()
    store.insert_signal = AsyncMock(return_value=11)
    store.record_match = AsyncMock(return_value=True)
    store.load_active_signals = AsyncMock(return_value=[])
    store.deactivate_signal = AsyncMock(return_value=True)
    return store


@pytest.fixture
def engine(mock_store: MagicMock) -> DetectionEngine:
    """Create an engine backed by the mock store."""
    return DetectionEngine(mock_store, persist_timeout_seconds=0.5)


# ============================================================================
# Signal Management Tests
# ============================================================================


class TestSignalManagement:
    """Tests for adding, removing and toggling signals."""

    async def test_add_signal(self, engine: DetectionEngine) -> None:
        """Added signals are active."""
        signal = SignalDefinition(signal_id=1, pattern="bitcoin")
        await engine.add_signal(signal)

        assert engine.active_signals() == (signal,)
        assert engine.get_signal(1) == signal

    async def test_add_empty_pattern_rejected(self, engine: DetectionEngine) -> None:
        """Empty patterns are rejected and not added."""
        with pytest.raises(EmptyPatternError):
            await engine.add_signal(SignalDefinition(signal_id=1, pattern=""))

        assert engine.active_signals() == ()

    async def test_add_invalid_regex_rejected(self, engine: DetectionEngine) -> None:
        """Active regex signals must compile."""
        with pytest.raises(InvalidPatternError):
            await engine.add_signal(
                SignalDefinition(signal_id=1, pattern="(oops", kind=SignalKind.REGEX)
            )

        assert engine.get_signal(1) is None

    async def test_add_replaces_same_id(self, engine: DetectionEngine) -> None:
        """Re-adding an id replaces the definition without reordering."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))
        await engine.add_signal(SignalDefinition(signal_id=2, pattern="ethereum"))
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="btc"))

        assert [s.pattern for s in engine.active_signals()] == ["btc", "ethereum"]

    async def test_remove_signal(self, engine: DetectionEngine, mock_store: MagicMock) -> None:
        """Removing a signal drops it and deactivates it in the store."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        assert await engine.remove_signal(1) is True
        assert engine.active_signals() == ()
        mock_store.deactivate_signal.assert_awaited_once_with(1)

    async def test_remove_unknown_is_noop(
        self, engine: DetectionEngine, mock_store: MagicMock
    ) -> None:
        """Removing an unknown id is not an error."""
        assert await engine.remove_signal(999) is False
        mock_store.deactivate_signal.assert_not_awaited()

    async def test_remove_survives_store_failure(
        self, engine: DetectionEngine, mock_store: MagicMock
    ) -> None:
        """A failing store does not prevent in-memory removal."""
        mock_store.deactivate_signal.side_effect = StoreError("down")
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        assert await engine.remove_signal(1) is True
        assert engine.get_signal(1) is None

    async def test_active_signals_is_snapshot(self, engine: DetectionEngine) -> None:
        """Later mutations do not change an earlier snapshot."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))
        snapshot = engine.active_signals()

        await engine.remove_signal(1)
        await engine.add_signal(SignalDefinition(signal_id=2, pattern="ethereum"))

        assert [s.signal_id for s in snapshot] == [1]

    async def test_set_active(self, engine: DetectionEngine) -> None:
        """Deactivated signals leave the active set but stay known."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        assert await engine.set_active(1, False) is True
        assert engine.active_signals() == ()
        assert engine.get_signal(1) is not None

        assert await engine.set_active(1, True) is True
        assert len(engine.active_signals()) == 1

    async def test_set_active_unknown(self, engine: DetectionEngine) -> None:
        """Unknown ids are reported, not raised."""
        assert await engine.set_active(5, True) is False

    async def test_activating_invalid_regex_rejected(self, engine: DetectionEngine) -> None:
        """An inactive regex is validated when it is switched on."""
        await engine.add_signal(
            SignalDefinition(signal_id=1, pattern="(oops", kind=SignalKind.REGEX, is_active=False)
        )

        with pytest.raises(InvalidPatternError):
            await engine.set_active(1, True)

        signal = engine.get_signal(1)
        assert signal is not None
        assert signal.is_active is False


class TestCreateSignal:
    """Tests for create_signal."""

    async def test_persists_then_adds(
        self, engine: DetectionEngine, mock_store: MagicMock
    ) -> None:
        """The store-assigned id is used for the active signal."""
        signal = await engine.create_signal(
            "bitcoin", SignalKind.KEYWORD, category="crypto", priority=3
        )

        mock_store.insert_signal.assert_awaited_once_with(
            "bitcoin", SignalKind.KEYWORD, "crypto", 3
        )
        assert signal.signal_id == 11
        assert engine.active_signals() == (signal,)

    async def test_store_failure_propagates(
        self, engine: DetectionEngine, mock_store: MagicMock
    ) -> None:
        """Signals the store did not accept are not activated."""
        mock_store.insert_signal.side_effect = StoreError("disk full")

        with pytest.raises(StoreError):
            await engine.create_signal("bitcoin")

        assert engine.active_signals() == ()

    async def test_invalid_regex_not_persisted(
        self, engine: DetectionEngine, mock_store: MagicMock
    ) -> None:
        """Validation happens before the store is touched."""
        with pytest.raises(InvalidPatternError):
            await engine.create_signal("(oops", SignalKind.REGEX)

        mock_store.insert_signal.assert_not_awaited()

    async def test_requires_store(self) -> None:
        """An in-memory engine cannot create persisted signals."""
        with pytest.raises(RuntimeError):
            await DetectionEngine().create_signal("bitcoin")


class TestLoadSignals:
    """Tests for load_signals."""

    async def test_loads_active_signals(
        self, engine: DetectionEngine, mock_store: MagicMock
    ) -> None:
        """Stored signals become active."""
        mock_store.load_active_signals.return_value = [
            SignalDefinition(signal_id=1, pattern="bitcoin"),
            SignalDefinition(signal_id=2, pattern=r"\$[0-9]+", kind=SignalKind.REGEX),
        ]

        assert await engine.load_signals() == 2
        assert [s.signal_id for s in engine.active_signals()] == [1, 2]

    async def test_skips_invalid_signals(
        self, engine: DetectionEngine, mock_store: MagicMock
    ) -> None:
        """Stored signals that fail validation are skipped."""
        mock_store.load_active_signals.return_value = [
            SignalDefinition(signal_id=1, pattern="(oops", kind=SignalKind.REGEX),
            SignalDefinition(signal_id=2, pattern="ethereum"),
        ]

        assert await engine.load_signals() == 1
        assert [s.signal_id for s in engine.active_signals()] == [2]

    async def test_removed_signal_not_resurrected(
        self, engine: DetectionEngine, mock_store: MagicMock
    ) -> None:
        """A signal removed this session stays removed after a reload."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))
        await engine.remove_signal(1)
        mock_store.load_active_signals.return_value = [
            SignalDefinition(signal_id=1, pattern="bitcoin"),
        ]

        assert await engine.load_signals() == 0
        assert engine.active_signals() == ()

    async def test_explicit_add_clears_removal(self, engine: DetectionEngine) -> None:
        """Adding a removed id again is an explicit choice and is honoured."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))
        await engine.remove_signal(1)
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        assert len(engine.active_signals()) == 1

    async def test_in_memory_state_wins(
        self, engine: DetectionEngine, mock_store: MagicMock
    ) -> None:
        """Loading does not overwrite signals already held in memory."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))
        await engine.set_active(1, False)
        mock_store.load_active_signals.return_value = [
            SignalDefinition(signal_id=1, pattern="bitcoin"),
        ]

        assert await engine.load_signals() == 0
        assert engine.active_signals() == ()

    async def test_without_store(self) -> None:
        """In-memory engines have nothing to load."""
        assert await DetectionEngine().load_signals() == 0

    async def test_store_failure_propagates(
        self, engine: DetectionEngine, mock_store: MagicMock
    ) -> None:
        """Failing to read the store is reported to the caller."""
        mock_store.load_active_signals.side_effect = StoreError("unreachable")

        with pytest.raises(StoreError):
            await engine.load_signals()


# ============================================================================
# Message Evaluation Tests
# ============================================================================


class TestCheckMessage:
    """Tests for check_message."""

    async def test_keyword_match(self, engine: DetectionEngine) -> None:
        """A keyword match carries the message identity and context."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        matches = await engine.check_message(make_message("Buy bitcoin now"))

        assert len(matches) == 1
        match = matches[0]
        assert match.signal_id == 1
        assert match.message_id == 100
        assert match.chat_id == 42
        assert match.context == "Buy bitcoin now"

    async def test_case_insensitive(self, engine: DetectionEngine) -> None:
        """BITCOIN matches the pattern bitcoin."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        assert len(await engine.check_message(make_message("BITCOIN"))) == 1

    async def test_regex_single_match(self, engine: DetectionEngine) -> None:
        """A regex signal yields one match even with several hits."""
        await engine.add_signal(
            SignalDefinition(signal_id=1, pattern=r"\$[0-9]+", kind=SignalKind.REGEX)
        )

        matches = await engine.check_message(make_message("The price is $1500 today, was $900"))

        assert len(matches) == 1

    async def test_multiple_signals(self, engine: DetectionEngine) -> None:
        """Each matching signal yields its own match."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))
        await engine.add_signal(SignalDefinition(signal_id=2, pattern="ethereum"))
        await engine.add_signal(SignalDefinition(signal_id=3, pattern="solana"))

        matches = await engine.check_message(make_message("Bitcoin and Ethereum prices updated"))

        assert sorted(m.signal_id for m in matches) == [1, 2]

    async def test_no_match(self, engine: DetectionEngine, mock_store: MagicMock) -> None:
        """Messages without matches touch neither store nor buffer."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="solana"))

        assert await engine.check_message(make_message("Bitcoin and Ethereum")) == []
        mock_store.record_match.assert_not_awaited()
        assert engine.recent_matches == ()

    async def test_inactive_signal_never_matches(self, engine: DetectionEngine) -> None:
        """Inactive signals are skipped whatever the content."""
        await engine.add_signal(
            SignalDefinition(signal_id=1, pattern="bitcoin", is_active=False)
        )
        await engine.add_signal(SignalDefinition(signal_id=2, pattern="ethereum"))
        await engine.set_active(2, False)

        assert await engine.check_message(make_message("bitcoin ethereum")) == []

    async def test_custom_signal_never_matches(self, engine: DetectionEngine) -> None:
        """Custom signals are inert without an extension."""
        await engine.add_signal(
            SignalDefinition(signal_id=1, pattern="anything", kind=SignalKind.CUSTOM)
        )

        assert await engine.check_message(make_message("anything at all")) == []

    async def test_custom_matcher_uses_full_content(self, mock_store: MagicMock) -> None:
        """Custom matches fall back to the full content as context."""
        engine = DetectionEngine(mock_store, custom_matcher=lambda _s, text: "!" in text)
        await engine.add_signal(
            SignalDefinition(signal_id=1, pattern="shouting", kind=SignalKind.CUSTOM)
        )

        matches = await engine.check_message(make_message("  urgent! "))

        assert len(matches) == 1
        assert matches[0].context == "  urgent! "

    async def test_records_each_match(
        self, engine: DetectionEngine, mock_store: MagicMock
    ) -> None:
        """Every match is recorded in the store."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))
        await engine.add_signal(SignalDefinition(signal_id=2, pattern="ethereum"))

        await engine.check_message(make_message("bitcoin and ethereum", message_id=5, chat_id=9))

        assert mock_store.record_match.await_count == 2
        mock_store.record_match.assert_any_await(1, 5, 9, "bitcoin and ethereum")
        mock_store.record_match.assert_any_await(2, 5, 9, "bitcoin and ethereum")

    async def test_match_ids_monotonic(self, engine: DetectionEngine) -> None:
        """Match ids increase across messages."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))
        await engine.add_signal(SignalDefinition(signal_id=2, pattern="ethereum"))

        first = await engine.check_message(make_message("bitcoin ethereum", message_id=1))
        second = await engine.check_message(make_message("bitcoin", message_id=2))

        ids = [m.match_id for m in first + second]
        assert ids == sorted(ids)
        assert len(set(ids)) == 3

    async def test_concurrent_checks_unique_ids(self, engine: DetectionEngine) -> None:
        """Concurrent evaluation never produces duplicate match ids."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        results = await asyncio.gather(
            *(engine.check_message(make_message("bitcoin", message_id=i)) for i in range(50))
        )

        ids = [m.match_id for batch in results for m in batch]
        assert len(ids) == 50
        assert len(set(ids)) == 50
        assert len(engine.recent_matches) == 50

    async def test_stats(self, engine: DetectionEngine) -> None:
        """Stats count messages and matches."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        await engine.check_message(make_message("bitcoin"))
        await engine.check_message(make_message("nothing here"))

        assert engine.stats.messages_checked == 2
        assert engine.stats.matches_found == 1
        assert engine.stats.persist_failures == 0

    async def test_without_store(self) -> None:
        """An engine without a store still matches and buffers."""
        engine = DetectionEngine()
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        matches = await engine.check_message(make_message("bitcoin"))

        assert len(matches) == 1
        assert engine.recent_matches == tuple(matches)


class TestPersistenceFailures:
    """Tests for degraded persistence."""

    async def test_store_error_keeps_match(
        self, engine: DetectionEngine, mock_store: MagicMock
    ) -> None:
        """A failing store does not drop the match."""
        mock_store.record_match.side_effect = StoreError("write failed")
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))
        await engine.add_signal(SignalDefinition(signal_id=2, pattern="ethereum"))

        matches = await engine.check_message(make_message("bitcoin ethereum"))

        assert len(matches) == 2
        assert len(engine.recent_matches) == 2
        assert engine.stats.persist_failures == 2

    async def test_unexpected_error_keeps_match(
        self, engine: DetectionEngine, mock_store: MagicMock
    ) -> None:
        """Any store exception is contained."""
        mock_store.record_match.side_effect = ConnectionResetError("reset")
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        assert len(await engine.check_message(make_message("bitcoin"))) == 1

    async def test_false_result_counted(
        self, engine: DetectionEngine, mock_store: MagicMock
    ) -> None:
        """A store that reports failure is counted as a persist failure."""
        mock_store.record_match.return_value = False
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        assert len(await engine.check_message(make_message("bitcoin"))) == 1
        assert engine.stats.persist_failures == 1

    async def test_slow_store_times_out(self, mock_store: MagicMock) -> None:
        """A slow store is abandoned after the timeout."""

        async def slow_record(*_args: object) -> bool:
            await asyncio.sleep(5)
            return True

        mock_store.record_match = AsyncMock(side_effect=slow_record)
        engine = DetectionEngine(mock_store, persist_timeout_seconds=0.05)
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        matches = await asyncio.wait_for(engine.check_message(make_message("bitcoin")), 2)

        assert len(matches) == 1
        assert engine.stats.persist_failures == 1
        assert len(engine.recent_matches) == 1


# ============================================================================
# Recent Match Buffer Tests
# ============================================================================


class TestRecentMatches:
    """Tests for the bounded recent-match buffer."""

    async def test_newest_first(self, engine: DetectionEngine) -> None:
        """The most recent match is at the head."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        for message_id in range(1, 4):
            await engine.check_message(make_message("bitcoin", message_id=message_id))

        assert [m.message_id for m in engine.recent_matches] == [3, 2, 1]

    async def test_batch_order_preserved(self, engine: DetectionEngine) -> None:
        """Matches from one message keep evaluation order at the head."""
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))
        await engine.add_signal(SignalDefinition(signal_id=2, pattern="ethereum"))

        await engine.check_message(make_message("bitcoin", message_id=1))
        await engine.check_message(make_message("bitcoin ethereum", message_id=2))

        assert [(m.message_id, m.signal_id) for m in engine.recent_matches] == [
            (2, 1),
            (2, 2),
            (1, 1),
        ]

    async def test_cap_drops_oldest(self, mock_store: MagicMock) -> None:
        """Beyond the cap the oldest matches are dropped."""
        engine = DetectionEngine(mock_store, recent_match_limit=5)
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        for message_id in range(1, 9):
            await engine.check_message(make_message("bitcoin", message_id=message_id))

        assert [m.message_id for m in engine.recent_matches] == [8, 7, 6, 5, 4]

    async def test_default_cap(self) -> None:
        """The default buffer holds at most 1000 matches."""
        engine = DetectionEngine()
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        for message_id in range(DEFAULT_RECENT_MATCH_LIMIT + 1):
            await engine.check_message(make_message("bitcoin", message_id=message_id))

        recent = engine.recent_matches
        assert len(recent) == DEFAULT_RECENT_MATCH_LIMIT == 1000
        assert recent[0].message_id == DEFAULT_RECENT_MATCH_LIMIT
        assert recent[-1].message_id == 1

    def test_invalid_limit(self) -> None:
        """The buffer must hold at least one match."""
        with pytest.raises(ValueError):
            DetectionEngine(recent_match_limit=0)


# ============================================================================
# Subscription Tests
# ============================================================================


class TestSubscribe:
    """Tests for match subscribers."""

    async def test_subscriber_receives_matches(self, engine: DetectionEngine) -> None:
        """Subscribers are called once per match."""
        received: list[SignalMatch] = []

        async def on_match(match: SignalMatch) -> None:
            received.append(match)

        engine.subscribe(on_match)
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))
        await engine.add_signal(SignalDefinition(signal_id=2, pattern="ethereum"))

        matches = await engine.check_message(make_message("bitcoin ethereum"))

        assert received == matches

    async def test_subscriber_error_contained(self, engine: DetectionEngine) -> None:
        """A failing subscriber does not break evaluation."""
        engine.subscribe(AsyncMock(side_effect=RuntimeError("boom")))
        await engine.add_signal(SignalDefinition(signal_id=1, pattern="bitcoin"))

        assert len(await engine.check_message(make_message("bitcoin"))) == 1

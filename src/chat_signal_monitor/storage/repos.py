"""Repository pattern implementations for data access.

This module provides data access abstractions for signal definitions and
the signal match log, plus ``SqlSignalStore``, the SQL-backed implementation
of the detection engine's store interface.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from chat_signal_monitor.detector.engine import StoreError
from chat_signal_monitor.detector.models import SignalDefinition, SignalKind
from chat_signal_monitor.storage.models import SignalMatchModel, SignalModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _definition_from_model(model: SignalModel) -> SignalDefinition:
    """Create a SignalDefinition from a SQLAlchemy model."""
    try:
        kind = SignalKind(model.type)
    except ValueError:
        logger.warning("Signal %d has unknown type %r, treating as custom", model.id, model.type)
        kind = SignalKind.CUSTOM
    return SignalDefinition(
        signal_id=model.id,
        pattern=model.pattern,
        kind=kind,
        category=model.category,
        priority=model.priority,
        is_active=model.is_active,
        created_at=_aware(model.created_at),
    )


@dataclass
class SignalMatchDTO:
    """Data transfer object for persisted signal matches."""

    record_id: int
    signal_id: int
    message_id: int
    chat_id: int
    context: str | None
    match_timestamp: datetime

    @classmethod
    def from_model(cls, model: SignalMatchModel) -> SignalMatchDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            record_id=model.id,
            signal_id=model.signal_id,
            message_id=model.message_id,
            chat_id=model.chat_id,
            context=model.context,
            match_timestamp=_aware(model.match_timestamp),
        )


class SignalRepository:
    """Repository for signal definitions."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def get_by_id(self, signal_id: int) -> SignalDefinition | None:
        """Get a signal by id."""
        model = await self.session.get(SignalModel, signal_id)
        return _definition_from_model(model) if model else None

    async def get_by_pattern(self, pattern: str) -> SignalDefinition | None:
        """Get a signal by its (unique) pattern."""
        result = await self.session.execute(
            select(SignalModel).where(SignalModel.pattern == pattern)
        )
        model = result.scalar_one_or_none()
        return _definition_from_model(model) if model else None

    async def get_active(self) -> list[SignalDefinition]:
        """Get all active signals in creation order."""
        result = await self.session.execute(
            select(SignalModel).where(SignalModel.is_active.is_(True)).order_by(SignalModel.id)
        )
        return [_definition_from_model(m) for m in result.scalars().all()]

    async def insert(
        self,
        pattern: str,
        kind: SignalKind = SignalKind.KEYWORD,
        category: str | None = None,
        priority: int = 0,
    ) -> int:
        """Insert a new signal.

        Returns:
            The new signal id.

        Raises:
            IntegrityError if the pattern already exists.
        """
        model = SignalModel(
            pattern=pattern,
            type=kind.value,
            category=category,
            priority=priority,
            is_active=True,
        )
        self.session.add(model)
        await self.session.flush()
        return model.id

    async def set_active(self, signal_id: int, active: bool) -> bool:
        """Set the activation flag of a signal.

        Returns:
            True if updated, False if not found.
        """
        result = await self.session.execute(
            update(SignalModel).where(SignalModel.id == signal_id).values(is_active=active)
        )
        return result.rowcount > 0


class SignalMatchRepository:
    """Repository for the signal match log."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def insert(
        self,
        signal_id: int,
        message_id: int,
        chat_id: int,
        context: str | None = None,
    ) -> int:
        """Insert a match record.

        Returns:
            The new record id.
        """
        model = SignalMatchModel(
            signal_id=signal_id,
            message_id=message_id,
            chat_id=chat_id,
            context=context,
        )
        self.session.add(model)
        await self.session.flush()
        return model.id

    async def get_for_signal(self, signal_id: int, limit: int = 100) -> list[SignalMatchDTO]:
        """Get the most recent matches for a signal.

        Args:
            signal_id: Signal to filter by.
            limit: Maximum number of results.

        Returns:
            List of SignalMatchDTOs, newest first.
        """
        result = await self.session.execute(
            select(SignalMatchModel)
            .where(SignalMatchModel.signal_id == signal_id)
            .order_by(SignalMatchModel.match_timestamp.desc(), SignalMatchModel.id.desc())
            .limit(limit)
        )
        return [SignalMatchDTO.from_model(m) for m in result.scalars().all()]

    async def get_recent(self, limit: int = 100) -> list[SignalMatchDTO]:
        """Get the most recent matches across all signals, newest first."""
        result = await self.session.execute(
            select(SignalMatchModel)
            .order_by(SignalMatchModel.match_timestamp.desc(), SignalMatchModel.id.desc())
            .limit(limit)
        )
        return [SignalMatchDTO.from_model(m) for m in result.scalars().all()]

    async def count_for_signal(self, signal_id: int) -> int:
        """Count recorded matches for a signal."""
        result = await self.session.execute(
            select(func.count())
            .select_from(SignalMatchModel)
            .where(SignalMatchModel.signal_id == signal_id)
        )
        return int(result.scalar_one())


class SqlSignalStore:
    """SQL-backed signal store used by the detection engine.

    Each call runs in its own session and transaction. Database errors are
    raised as ``StoreError``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize the store.

        Args:
            session_factory: Factory producing async sessions.
        """
        self._session_factory = session_factory

    async def insert_signal(
        self,
        pattern: str,
        kind: SignalKind,
        category: str | None,
        priority: int,
    ) -> int:
        """Persist a new signal and return its id."""
        try:
            async with self._session_factory() as session, session.begin():
                signal_id = await SignalRepository(session).insert(
                    pattern, kind, category, priority
                )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to insert signal {pattern!r}: {e}") from e
        logger.debug("Stored signal %d (%r)", signal_id, pattern)
        return signal_id

    async def record_match(
        self,
        signal_id: int,
        message_id: int,
        chat_id: int,
        context: str | None,
    ) -> bool:
        """Persist a match record."""
        try:
            async with self._session_factory() as session, session.begin():
                await SignalMatchRepository(session).insert(
                    signal_id, message_id, chat_id, context
                )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to record match for signal {signal_id}: {e}") from e
        return True

    async def load_active_signals(self) -> list[SignalDefinition]:
        """Return all active signals."""
        try:
            async with self._session_factory() as session:
                return await SignalRepository(session).get_active()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load signals: {e}") from e

    async def deactivate_signal(self, signal_id: int) -> bool:
        """Mark a signal inactive so it is not loaded again."""
        try:
            async with self._session_factory() as session, session.begin():
                return await SignalRepository(session).set_active(signal_id, False)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to deactivate signal {signal_id}: {e}") from e

    async def matches_for_signal(self, signal_id: int, limit: int = 100) -> list[SignalMatchDTO]:
        """Return persisted matches for a signal, newest first."""
        try:
            async with self._session_factory() as session:
                return await SignalMatchRepository(session).get_for_signal(signal_id, limit)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read matches for signal {signal_id}: {e}") from e

"""Timer store -- scheduled future events, one row per (session, timer id)."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chorus.session.keys import validate_session_key
from chorus.storage.database import Database
from chorus.storage.models import Timer
from chorus.timers.schemas import TimerDetail
from chorus.utils import ensure_utc, now_ms, short_id, utc_now

logger = logging.getLogger(__name__)


class TimerStore:
    """Manages the timers table.

    Transitions are one-way: pending -> promoted and pending -> cancelled,
    both conditional on the row still being pending. Re-upserting a timer
    id re-arms it as pending with the new fire time.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    async def upsert_timer(
        self,
        session_key: str,
        timer_id: str,
        fire_at_ms: int,
        payload: Any = None,
    ) -> TimerDetail:
        """Create or re-arm a timer."""
        validate_session_key(session_key)
        for _ in range(2):
            async with self._db.session() as session:
                row = await session.scalar(
                    select(Timer)
                    .where(Timer.session_key == session_key)
                    .where(Timer.timer_id == timer_id)
                )
                if row is None:
                    row = Timer(session_key=session_key, timer_id=timer_id)
                    session.add(row)
                row.fire_at_ms = fire_at_ms
                row.payload = payload
                row.status = "pending"
                row.cancelled_at = None
                try:
                    await session.commit()
                except IntegrityError:
                    # Concurrent insert of the same id; the next pass updates it
                    await session.rollback()
                    continue
                logger.debug(
                    "Scheduled timer %s for %s in %dms",
                    timer_id,
                    session_key,
                    fire_at_ms - now_ms(),
                )
                return self._to_detail(row)
        raise RuntimeError(f"Could not upsert timer {timer_id} for {session_key}")

    async def find_due(self, before_ms: int | None = None, limit: int | None = None) -> list[TimerDetail]:
        """Pending timers with fire_at_ms <= before_ms, oldest first."""
        cutoff = now_ms() if before_ms is None else before_ms
        async with self._db.session() as session:
            q = (
                select(Timer)
                .where(Timer.status == "pending")
                .where(Timer.fire_at_ms <= cutoff)
                .order_by(Timer.fire_at_ms, Timer.created_at)
            )
            if limit:
                q = q.limit(limit)
            result = await session.execute(q)
            return [self._to_detail(r) for r in result.scalars().all()]

    async def mark_promoted(self, id: UUID, *, session: AsyncSession | None = None) -> bool:
        """pending -> promoted. With ``session`` the caller owns the commit."""
        stmt = (
            update(Timer)
            .where(Timer.id == id)
            .where(Timer.status == "pending")
            .values(status="promoted", updated_at=utc_now())
        )
        if session is not None:
            result = await session.execute(stmt)
            return result.rowcount > 0
        async with self._db.session() as own:
            result = await own.execute(stmt)
            await own.commit()
            return result.rowcount > 0

    async def mark_cancelled(self, id: UUID) -> bool:
        """pending -> cancelled. False if the timer already left pending."""
        now = utc_now()
        async with self._db.session() as session:
            result = await session.execute(
                update(Timer)
                .where(Timer.id == id)
                .where(Timer.status == "pending")
                .values(status="cancelled", cancelled_at=now, updated_at=now)
            )
            await session.commit()
            if result.rowcount > 0:
                logger.debug("Cancelled timer %s", short_id(id))
            return result.rowcount > 0

    async def cancel_by_session(self, session_key: str) -> int:
        """Cancel every pending timer of a session."""
        validate_session_key(session_key)
        now = utc_now()
        async with self._db.session() as session:
            result = await session.execute(
                update(Timer)
                .where(Timer.session_key == session_key)
                .where(Timer.status == "pending")
                .values(status="cancelled", cancelled_at=now, updated_at=now)
            )
            await session.commit()
            if result.rowcount > 0:
                logger.info("Cancelled %d pending timer(s) for %s", result.rowcount, session_key)
            return result.rowcount

    async def get_timer(self, session_key: str, timer_id: str) -> TimerDetail | None:
        async with self._db.session() as session:
            row = await session.scalar(
                select(Timer)
                .where(Timer.session_key == session_key)
                .where(Timer.timer_id == timer_id)
            )
            return self._to_detail(row) if row else None

    @staticmethod
    def _to_detail(row: Timer) -> TimerDetail:
        return TimerDetail(
            id=row.id,
            session_key=row.session_key,
            timer_id=row.timer_id,
            fire_at_ms=row.fire_at_ms,
            payload=row.payload,
            status=row.status,
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
            cancelled_at=ensure_utc(row.cancelled_at),
        )

"""Event store -- append-only event log with per-session sequence numbers."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from chorus.events.schemas import EVENT_TYPES, EventDetail, validate_payload
from chorus.session.keys import validate_session_key
from chorus.storage.database import Database
from chorus.storage.models import Event
from chorus.utils import ensure_utc, short_id

logger = logging.getLogger(__name__)


@dataclass
class _SeqCounter:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last: int | None = None


class EventStore:
    """Durable, append-only log of events per session key.

    Sequence numbers come from an in-process counter per session, seeded
    from max(seq) in the log on first use. Allocation is serialized per
    session so two callers never receive the same value, even when the
    rows they write have not been committed yet. Counters are an LRU cache
    of at most ``max_cached_sessions`` entries; an evicted session is
    re-seeded from the log on its next append. There is no update or
    delete: the log is the durable history.
    """

    def __init__(self, database: Database, max_cached_sessions: int = 10_000) -> None:
        self._db = database
        self._counters: OrderedDict[str, _SeqCounter] = OrderedDict()
        self._max_cached = max_cached_sessions

    async def get_next_seq(self, session_key: str) -> int:
        """Allocate the next sequence number for a session (1 for new sessions)."""
        validate_session_key(session_key)
        counter = self._counters.get(session_key)
        if counter is None:
            counter = self._counters[session_key] = _SeqCounter()
        self._counters.move_to_end(session_key)
        self._evict()

        async with counter.lock:
            if counter.last is None:
                async with self._db.session() as session:
                    counter.last = await session.scalar(
                        select(func.max(Event.seq)).where(Event.session_key == session_key)
                    ) or 0
            counter.last += 1
            return counter.last

    @property
    def cached_sessions(self) -> int:
        return len(self._counters)

    def _evict(self) -> None:
        """Drop least recently used counters; one mid-allocation stays put."""
        while len(self._counters) > self._max_cached:
            session_key, counter = next(iter(self._counters.items()))
            if counter.lock.locked():
                break
            del self._counters[session_key]

    async def create(
        self,
        session_key: str,
        seq: int,
        event_type: str,
        payload: dict[str, Any],
        *,
        session: AsyncSession | None = None,
    ) -> EventDetail:
        """Persist an event with an already-allocated sequence number.

        When ``session`` is given the row joins the caller's transaction and
        the caller commits; otherwise the event is committed here.
        """
        validate_session_key(session_key)
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unsupported event type: {event_type}")
        if seq < 1:
            raise ValueError(f"seq must be positive, got {seq}")
        body = validate_payload(event_type, payload)

        record = Event(session_key=session_key, seq=seq, type=event_type, payload=body)
        if session is not None:
            session.add(record)
            await session.flush()
        else:
            async with self._db.session() as own:
                own.add(record)
                await own.commit()

        logger.debug("Created %s event %s (%s #%d)", event_type, short_id(record.id), session_key, seq)
        return self._to_detail(record)

    async def append(
        self,
        session_key: str,
        event_type: str,
        payload: dict[str, Any],
        *,
        session: AsyncSession | None = None,
    ) -> EventDetail:
        """Allocate the next sequence number and persist the event."""
        seq = await self.get_next_seq(session_key)
        return await self.create(session_key, seq, event_type, payload, session=session)

    async def find_by_session(
        self,
        session_key: str,
        after_seq: int | None = None,
        limit: int | None = None,
    ) -> list[EventDetail]:
        """Events for a session ordered by sequence (replay/debugging)."""
        validate_session_key(session_key)
        async with self._db.session() as session:
            q = select(Event).where(Event.session_key == session_key).order_by(Event.seq)
            if after_seq is not None:
                q = q.where(Event.seq > after_seq)
            if limit:
                q = q.limit(limit)
            result = await session.execute(q)
            return [self._to_detail(e) for e in result.scalars().all()]

    async def get(self, event_id) -> EventDetail | None:
        async with self._db.session() as session:
            record = await session.get(Event, event_id)
            return self._to_detail(record) if record else None

    @staticmethod
    def _to_detail(record: Event) -> EventDetail:
        return EventDetail(
            id=record.id,
            session_key=record.session_key,
            seq=record.seq,
            type=record.type,
            payload=record.payload,
            created_at=ensure_utc(record.created_at),
        )

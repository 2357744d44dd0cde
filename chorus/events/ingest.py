"""Event ingestion -- the single entry point for inbound occurrences.

Validates the occurrence, appends it durably to the event log and hands
it to the queue. A genuine user message also takes the turn: it aborts
whatever is streaming on the session and clears autonomous work that was
waiting to go out.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from chorus.chat.connections import ConnectionManager
from chorus.effects.outbox import OutboxStore
from chorus.events.queue import EventQueue
from chorus.events.schemas import EventDetail, EventInput, validate_payload
from chorus.events.store import EventStore
from chorus.timers.store import TimerStore

logger = logging.getLogger(__name__)


class EventIngestor:
    def __init__(
        self,
        event_store: EventStore,
        queue: EventQueue,
        outbox: OutboxStore,
        timer_store: TimerStore,
        connections: ConnectionManager,
    ) -> None:
        self._events = event_store
        self._queue = queue
        self._outbox = outbox
        self._timers = timer_store
        self._connections = connections

    async def ingest(
        self,
        session_key: str,
        event_type: str,
        payload: dict[str, Any],
        *,
        detached: bool = False,
    ) -> tuple[EventDetail, asyncio.Future]:
        """Persist and enqueue an event. Raises ValueError on invalid input."""
        data = EventInput(session_key=session_key, type=event_type, payload=payload)
        body = validate_payload(data.type, data.payload)

        if data.type == "user_message" and not body.get("synthetic", False):
            await self._take_turn(data.session_key)

        event = await self._events.append(data.session_key, data.type, body)
        future = self._queue.enqueue(event, detached=detached)
        logger.info("Ingested %s event for %s (seq %d)", event.type, event.session_key, event.seq)
        return event, future

    async def _take_turn(self, session_key: str) -> None:
        aborted = self._connections.abort_session(session_key)
        cleared = await self._outbox.clear_pending_by_session(session_key, autonomous_only=True)
        cancelled = await self._timers.cancel_by_session(session_key)
        if aborted or cleared or cancelled:
            logger.info(
                "User message on %s: aborted %d stream(s), cleared %d effect(s), cancelled %d timer(s)",
                session_key,
                aborted,
                cleared,
                cancelled,
            )

"""Timer worker -- promotes due timers into timer events.

Runs a periodic poll loop that:
1. Loads pending timers whose fire_at_ms has passed
2. Cancels any whose session key is malformed (legacy rows)
3. Promotes each valid timer and appends its timer event in one transaction
4. Enqueues the new event without waiting for it

Per-timer failures are logged and skipped; the rest of the batch proceeds.
"""

from __future__ import annotations

import asyncio
import logging

from chorus.config import Settings
from chorus.events.queue import EventQueue
from chorus.events.schemas import EventDetail
from chorus.events.store import EventStore
from chorus.session.keys import is_valid_session_key
from chorus.storage.database import Database
from chorus.timers.schemas import TimerDetail
from chorus.timers.store import TimerStore
from chorus.utils import now_ms, short_id

logger = logging.getLogger(__name__)


class TimerWorker:
    """Background poller that turns due timers into events.

    Promotion is a conditional pending -> promoted update committed
    together with the event insert, so a timer yields at most one event
    however many times a batch is re-run.
    """

    def __init__(
        self,
        database: Database,
        timer_store: TimerStore,
        event_store: EventStore,
        queue: EventQueue,
        settings: Settings,
    ) -> None:
        self._db = database
        self._timers = timer_store
        self._events = event_store
        self._queue = queue
        self._settings = settings
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        """Start the poll loop."""
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="timer-worker")
        logger.info(
            "Timer worker started (poll=%dms, batch=%d)",
            self._settings.timer_poll_interval_ms,
            self._settings.timer_batch_size,
        )

    async def stop(self) -> None:
        """Stop the poll loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Timer worker stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        """Periodic loop: promote due timers -> sleep -> repeat."""
        interval = self._settings.timer_poll_interval_ms / 1000
        while self._running:
            try:
                promoted = await self.poll_and_promote()
                if promoted:
                    logger.info("Promoted %d due timer(s)", promoted)
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Timer poll failed")
                await asyncio.sleep(interval)

    async def poll_and_promote(self, now: int | None = None) -> int:
        """Promote every due timer in one batch. Returns the number promoted."""
        due = await self._timers.find_due(
            now_ms() if now is None else now,
            limit=self._settings.timer_batch_size,
        )
        if not due:
            return 0

        promoted = 0
        for timer in due:
            try:
                if not is_valid_session_key(timer.session_key):
                    await self._timers.mark_cancelled(timer.id)
                    logger.warning(
                        "Cancelled timer %s (%s): malformed session key %r",
                        short_id(timer.id),
                        timer.timer_id,
                        timer.session_key,
                    )
                    continue

                event = await self._promote(timer)
                if event is None:
                    logger.debug("Timer %s no longer pending, skipping", short_id(timer.id))
                    continue

                self._queue.enqueue(event, detached=True)
                promoted += 1
                logger.debug(
                    "Promoted timer %s (%s) -> event %s (%s #%d)",
                    short_id(timer.id),
                    timer.timer_id,
                    short_id(event.id),
                    event.session_key,
                    event.seq,
                )
            except Exception:
                logger.exception("Failed to promote timer %s", short_id(timer.id))

        return promoted

    async def _promote(self, timer: TimerDetail) -> EventDetail | None:
        async with self._db.session() as session:
            if not await self._timers.mark_promoted(timer.id, session=session):
                return None
            payload = {"timer_id": timer.timer_id}
            if timer.payload is not None:
                payload["payload"] = timer.payload
            event = await self._events.append(timer.session_key, "timer", payload, session=session)
            await session.commit()
            return event

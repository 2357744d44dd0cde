"""In-process event queue with strict per-session ordering.

Each session key has its own FIFO. A fixed-interval loop picks, on every
tick, every session with queued events that is not already processing and
dispatches exactly one event for it. Sessions run concurrently; within a
session at most one event is ever in flight.

Failed events are retried according to their type:
- ``timer`` events are never retried (a duplicate autonomous message is
  worse than a missed one)
- other events get up to ``max_attempts`` attempts with exponential
  backoff, re-appended to the same session's queue after the delay
- errors flagged ``retryable = False`` (e.g. an agent rejecting the
  request outright) fail on the first attempt

The queue is a disposable cache over the durable event log: losing it
affects delivery completeness, never the correctness of the log.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from chorus.events.retry import RetryScheduler
from chorus.events.schemas import EventDetail
from chorus.utils import short_id

logger = logging.getLogger(__name__)

EventProcessor = Callable[[EventDetail], Awaitable[None]]


class EventProcessingError(RuntimeError):
    """Terminal failure of an event after its retry budget was spent."""

    def __init__(self, event: EventDetail, attempts: int, cause: BaseException) -> None:
        super().__init__(
            f"Event {event.id} ({event.type}, {event.session_key} #{event.seq}) "
            f"failed after {attempts} attempt(s): {type(cause).__name__}: {cause}"
        )
        self.event = event
        self.attempts = attempts
        self.cause = cause


@dataclass(eq=False)
class _QueuedEvent:
    event: EventDetail
    future: asyncio.Future
    attempt: int = 1


def _log_detached_failure(future: asyncio.Future) -> None:
    """Done-callback for fire-and-forget handles: consume and log the outcome."""
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Detached event failed: %s", exc)


class EventQueue:
    """Per-session FIFO dispatcher with retry/backoff."""

    def __init__(
        self,
        interval_ms: int = 50,
        max_attempts: int = 3,
        retry_base_delay_ms: int = 1000,
        scheduler: RetryScheduler | None = None,
    ) -> None:
        self._interval = interval_ms / 1000
        self._max_attempts = max_attempts
        self._base_delay = retry_base_delay_ms / 1000
        self._scheduler = scheduler or RetryScheduler()
        self._queues: dict[str, deque[_QueuedEvent]] = {}
        self._processing: set[str] = set()
        self._in_flight: set[asyncio.Task] = set()
        self._retrying: list[_QueuedEvent] = []
        self._processor: EventProcessor | None = None
        self._task: asyncio.Task | None = None
        self._running = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(self, event: EventDetail, *, detached: bool = False) -> asyncio.Future:
        """Append an event to its session's queue.

        Returns a future resolved when the event is processed, or rejected
        with EventProcessingError. With ``detached=True`` the outcome is only
        logged, for callers that never await the handle.
        """
        future = asyncio.get_running_loop().create_future()
        if detached:
            future.add_done_callback(_log_detached_failure)
        self._append(_QueuedEvent(event=event, future=future))
        logger.debug(
            "Enqueued %s event %s (%s #%d, depth=%d)",
            event.type,
            short_id(event.id),
            event.session_key,
            event.seq,
            self.queue_depth(event.session_key),
        )
        return future

    def start(self, processor: EventProcessor) -> None:
        """Start the dispatch loop with the given processor."""
        if self._running:
            raise RuntimeError("EventQueue already started")
        self._processor = processor
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="event-queue")
        logger.info("Event queue started (interval=%dms)", int(self._interval * 1000))

    async def stop(self) -> None:
        """Stop dispatching; cancel retries, in-flight work and queued handles."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        dropped = self._scheduler.cancel_all()
        for entry in self._retrying:
            if not entry.future.done():
                entry.future.cancel()
        self._retrying.clear()
        for task in list(self._in_flight):
            task.cancel()
        for task in list(self._in_flight):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._in_flight.clear()

        for queue in self._queues.values():
            for entry in queue:
                if not entry.future.done():
                    entry.future.cancel()
        self._queues.clear()
        self._processor = None
        logger.info("Event queue stopped (dropped %d scheduled retries)", dropped)

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (1-based)."""
        return self._base_delay * (2 ** (attempt - 1))

    def queue_depth(self, session_key: str) -> int:
        queue = self._queues.get(session_key)
        return len(queue) if queue else 0

    def total_depth(self) -> int:
        return sum(len(q) for q in self._queues.values())

    def is_processing(self, session_key: str) -> bool:
        return session_key in self._processing

    @property
    def is_started(self) -> bool:
        return self._running

    @property
    def pending_retries(self) -> int:
        return self._scheduler.pending

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------

    async def _process_loop(self) -> None:
        """Main loop: dispatch one event per idle session, sleep, repeat."""
        while self._running:
            try:
                self._tick()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in event queue loop")
                await asyncio.sleep(self._interval)

    def _tick(self) -> int:
        """Dispatch one event for every idle session with queued work.

        The check of ``_processing`` and the mark that follows run without
        an await in between, so no other coroutine can claim the same
        session in the gap.
        """
        if self._processor is None:
            return 0
        dispatched = 0
        for session_key in list(self._queues):
            if session_key in self._processing:
                continue
            queue = self._queues.get(session_key)
            if not queue:
                self._queues.pop(session_key, None)
                continue

            entry = queue.popleft()
            if not queue:
                del self._queues[session_key]
            if entry.future.done():
                # Caller cancelled the handle while it waited
                continue

            self._processing.add(session_key)
            task = asyncio.create_task(
                self._run(session_key, entry),
                name=f"event-{short_id(entry.event.id)}",
            )
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            dispatched += 1
        return dispatched

    async def _run(self, session_key: str, entry: _QueuedEvent) -> None:
        try:
            await self._processor(entry.event)
        except asyncio.CancelledError:
            if not entry.future.done():
                entry.future.cancel()
            raise
        except Exception as exc:
            self._handle_failure(entry, exc)
        else:
            if not entry.future.done():
                entry.future.set_result(None)
        finally:
            self._processing.discard(session_key)

    def _handle_failure(self, entry: _QueuedEvent, exc: Exception) -> None:
        event = entry.event
        if event.type == "timer":
            logger.warning(
                "Timer event %s (%s #%d) failed, not retrying: %s",
                short_id(event.id), event.session_key, event.seq, exc,
            )
            self._reject(entry, exc)
            return

        if getattr(exc, "retryable", True) is False:
            logger.error(
                "Event %s (%s #%d) failed with a non-retryable error: %s",
                short_id(event.id), event.session_key, event.seq, exc,
            )
            self._reject(entry, exc)
            return

        if entry.attempt >= self._max_attempts:
            logger.error(
                "Event %s (%s #%d) failed after %d attempts: %s",
                short_id(event.id), event.session_key, event.seq, entry.attempt, exc,
            )
            self._reject(entry, exc)
            return

        delay = self.backoff_delay(entry.attempt)
        logger.warning(
            "Event %s (%s #%d) failed on attempt %d/%d, retrying in %.3fs: %s",
            short_id(event.id), event.session_key, event.seq,
            entry.attempt, self._max_attempts, delay, exc,
        )
        entry.attempt += 1
        self._retrying.append(entry)
        self._scheduler.schedule(delay, lambda: self._requeue(entry))

    def _requeue(self, entry: _QueuedEvent) -> None:
        if entry in self._retrying:
            self._retrying.remove(entry)
        if not self._running:
            if not entry.future.done():
                entry.future.cancel()
            return
        self._append(entry)

    def _append(self, entry: _QueuedEvent) -> None:
        self._queues.setdefault(entry.event.session_key, deque()).append(entry)

    @staticmethod
    def _reject(entry: _QueuedEvent, exc: Exception) -> None:
        if not entry.future.done():
            entry.future.set_exception(EventProcessingError(entry.event, entry.attempt, exc))

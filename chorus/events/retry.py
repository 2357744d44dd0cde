"""Delayed-task scheduler for event retries.

A time-ordered heap drained by a single asyncio task. Each scheduled
callback gets a handle that can be cancelled until it fires, which makes
retries predictable and lets shutdown drop them all at once.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(order=True)
class ScheduledRetry:
    """A callback due at a monotonic deadline."""

    due: float
    order: int  # tie-breaker: FIFO among equal deadlines
    callback: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class RetryScheduler:
    """Runs callbacks after a delay, in deadline order."""

    def __init__(self) -> None:
        self._heap: list[ScheduledRetry] = []
        self._counter = itertools.count()
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task | None = None

    def schedule(self, delay: float, callback: Callable[[], None]) -> ScheduledRetry:
        """Schedule ``callback`` to run after ``delay`` seconds."""
        entry = ScheduledRetry(
            due=time.monotonic() + max(delay, 0.0),
            order=next(self._counter),
            callback=callback,
        )
        heapq.heappush(self._heap, entry)
        self._ensure_running()
        self._wakeup.set()
        return entry

    def cancel(self, entry: ScheduledRetry) -> None:
        entry.cancel()

    def cancel_all(self) -> int:
        """Cancel every pending entry and stop the drain task."""
        count = sum(1 for e in self._heap if not e.cancelled)
        for entry in self._heap:
            entry.cancel()
        self._heap.clear()
        if self._task:
            self._task.cancel()
            self._task = None
        return count

    @property
    def pending(self) -> int:
        return sum(1 for e in self._heap if not e.cancelled)

    def _ensure_running(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="retry-scheduler")

    async def _run(self) -> None:
        while True:
            # Drop cancelled entries at the head
            while self._heap and self._heap[0].cancelled:
                heapq.heappop(self._heap)

            if not self._heap:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            delay = self._heap[0].due - time.monotonic()
            if delay > 0:
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
                # Re-evaluate: an earlier entry may have been scheduled
                continue

            entry = heapq.heappop(self._heap)
            if entry.cancelled:
                continue
            try:
                entry.callback()
            except Exception:
                logger.exception("Retry callback failed")

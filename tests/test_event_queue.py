"""Tests for EventQueue -- per-session ordering, concurrency and retries."""

from __future__ import annotations

import asyncio
from collections import defaultdict

import pytest

from chorus.agent.protocol import AgentStreamError
from chorus.events.queue import EventProcessingError, EventQueue
from chorus.events.retry import RetryScheduler
from chorus.events.schemas import EventDetail
from tests.conftest import SESSION_KEY, make_event


class RecordingScheduler(RetryScheduler):
    """Records requested delays and fires retries immediately."""

    def __init__(self) -> None:
        super().__init__()
        self.delays: list[float] = []

    def schedule(self, delay, callback):
        self.delays.append(delay)
        return super().schedule(0, callback)


class TestOrdering:
    @pytest.mark.asyncio
    async def test_single_in_flight_per_session(self):
        queue = EventQueue(interval_ms=1)
        active: defaultdict[str, int] = defaultdict(int)
        max_active: defaultdict[str, int] = defaultdict(int)
        overall = {"now": 0, "max": 0}
        seen: defaultdict[str, list[int]] = defaultdict(list)

        async def processor(event: EventDetail) -> None:
            key = event.session_key
            active[key] += 1
            overall["now"] += 1
            max_active[key] = max(max_active[key], active[key])
            overall["max"] = max(overall["max"], overall["now"])
            await asyncio.sleep(0.01)
            seen[key].append(event.seq)
            active[key] -= 1
            overall["now"] -= 1

        keys = ["u:a:t1", "u:a:t2", "u:a:t3"]
        futures = [
            queue.enqueue(make_event(session_key=key, seq=seq))
            for seq in range(1, 6)
            for key in keys
        ]
        queue.start(processor)
        try:
            await asyncio.wait_for(asyncio.gather(*futures), timeout=5)
        finally:
            await queue.stop()

        for key in keys:
            assert max_active[key] == 1
            assert seen[key] == [1, 2, 3, 4, 5]
        assert overall["max"] > 1  # sessions overlap

    @pytest.mark.asyncio
    async def test_slow_session_does_not_block_others(self):
        queue = EventQueue(interval_ms=1)
        done: list[str] = []

        async def processor(event: EventDetail) -> None:
            if event.session_key == "u:a:slow":
                await asyncio.sleep(0.3)
            done.append(event.session_key)

        slow = queue.enqueue(make_event(session_key="u:a:slow"))
        fast = queue.enqueue(make_event(session_key="u:a:fast"))
        queue.start(processor)
        try:
            await asyncio.wait_for(fast, timeout=1)
            assert done == ["u:a:fast"]
            await asyncio.wait_for(slow, timeout=1)
        finally:
            await queue.stop()


class TestRetries:
    @pytest.mark.asyncio
    async def test_exponential_backoff_then_reject(self):
        scheduler = RecordingScheduler()
        queue = EventQueue(interval_ms=1, max_attempts=3, retry_base_delay_ms=100, scheduler=scheduler)
        calls: list[int] = []

        async def processor(event: EventDetail) -> None:
            calls.append(event.seq)
            raise RuntimeError("agent down")

        future = queue.enqueue(make_event())
        queue.start(processor)
        try:
            with pytest.raises(EventProcessingError) as exc_info:
                await asyncio.wait_for(future, timeout=2)
        finally:
            await queue.stop()

        assert scheduler.delays == [0.1, 0.2]
        assert len(calls) == 3
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.cause, RuntimeError)

    @pytest.mark.asyncio
    async def test_recovers_on_retry(self):
        scheduler = RecordingScheduler()
        queue = EventQueue(interval_ms=1, max_attempts=3, scheduler=scheduler)
        attempts = {"n": 0}

        async def processor(event: EventDetail) -> None:
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise RuntimeError("transient")

        future = queue.enqueue(make_event())
        queue.start(processor)
        try:
            assert await asyncio.wait_for(future, timeout=2) is None
        finally:
            await queue.stop()
        assert attempts["n"] == 2
        assert len(scheduler.delays) == 1

    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt_after_doubling_delays(self):
        scheduler = RecordingScheduler()
        queue = EventQueue(interval_ms=1, max_attempts=3, retry_base_delay_ms=50, scheduler=scheduler)
        attempts = {"n": 0}

        async def processor(event: EventDetail) -> None:
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise RuntimeError(f"transient #{attempts['n']}")

        future = queue.enqueue(make_event())
        queue.start(processor)
        try:
            assert await asyncio.wait_for(future, timeout=2) is None
        finally:
            await queue.stop()
        assert attempts["n"] == 3
        assert scheduler.delays == [0.05, 0.1]

    @pytest.mark.asyncio
    async def test_non_retryable_error_rejected_at_once(self):
        scheduler = RecordingScheduler()
        queue = EventQueue(interval_ms=1, max_attempts=3, scheduler=scheduler)
        calls: list[int] = []

        async def processor(event: EventDetail) -> None:
            calls.append(event.seq)
            raise AgentStreamError("invalid request", retryable=False)

        future = queue.enqueue(make_event())
        queue.start(processor)
        try:
            with pytest.raises(EventProcessingError) as exc_info:
                await asyncio.wait_for(future, timeout=2)
        finally:
            await queue.stop()

        assert calls == [1]
        assert scheduler.delays == []
        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.cause, AgentStreamError)

    @pytest.mark.asyncio
    async def test_retryable_agent_error_is_retried(self):
        scheduler = RecordingScheduler()
        queue = EventQueue(interval_ms=1, max_attempts=2, scheduler=scheduler)

        async def processor(event: EventDetail) -> None:
            raise AgentStreamError("overloaded", retryable=True)

        future = queue.enqueue(make_event())
        queue.start(processor)
        try:
            with pytest.raises(EventProcessingError) as exc_info:
                await asyncio.wait_for(future, timeout=2)
        finally:
            await queue.stop()
        assert exc_info.value.attempts == 2
        assert len(scheduler.delays) == 1

    @pytest.mark.asyncio
    async def test_timer_events_never_retried(self):
        scheduler = RecordingScheduler()
        queue = EventQueue(interval_ms=1, max_attempts=3, scheduler=scheduler)
        calls: list[int] = []

        async def processor(event: EventDetail) -> None:
            calls.append(event.seq)
            raise RuntimeError("boom")

        future = queue.enqueue(make_event(event_type="timer"))
        queue.start(processor)
        try:
            with pytest.raises(EventProcessingError) as exc_info:
                await asyncio.wait_for(future, timeout=2)
        finally:
            await queue.stop()

        assert calls == [1]
        assert scheduler.delays == []
        assert exc_info.value.attempts == 1

    def test_backoff_delay(self):
        queue = EventQueue(retry_base_delay_ms=1000)
        assert queue.backoff_delay(1) == 1.0
        assert queue.backoff_delay(2) == 2.0
        assert queue.backoff_delay(3) == 4.0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_twice_raises(self):
        queue = EventQueue()

        async def processor(event: EventDetail) -> None:
            pass

        queue.start(processor)
        try:
            with pytest.raises(RuntimeError):
                queue.start(processor)
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_monitoring(self):
        queue = EventQueue()
        queue.enqueue(make_event(session_key="u:a:t1", seq=1))
        queue.enqueue(make_event(session_key="u:a:t1", seq=2))
        queue.enqueue(make_event(session_key="u:a:t2", seq=1))
        assert queue.queue_depth("u:a:t1") == 2
        assert queue.queue_depth("u:a:none") == 0
        assert queue.total_depth() == 3
        assert not queue.is_processing("u:a:t1")
        assert not queue.is_started
        await queue.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_outstanding_handles(self):
        queue = EventQueue(interval_ms=1)
        release = asyncio.Event()

        async def processor(event: EventDetail) -> None:
            await release.wait()

        in_flight = queue.enqueue(make_event(seq=1))
        waiting = queue.enqueue(make_event(seq=2))
        queue.start(processor)
        await asyncio.sleep(0.02)
        assert queue.is_processing(SESSION_KEY)

        await queue.stop()
        assert in_flight.cancelled()
        assert waiting.cancelled()
        assert not queue.is_processing(SESSION_KEY)
        assert not queue.is_started

    @pytest.mark.asyncio
    async def test_stop_drops_scheduled_retries(self):
        queue = EventQueue(interval_ms=1, max_attempts=3, retry_base_delay_ms=10_000)

        async def processor(event: EventDetail) -> None:
            raise RuntimeError("fail")

        future = queue.enqueue(make_event())
        queue.start(processor)
        await asyncio.sleep(0.05)
        assert queue.pending_retries == 1

        await queue.stop()
        assert queue.pending_retries == 0
        assert future.cancelled()

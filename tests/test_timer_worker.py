"""Tests for TimerWorker -- promotion into timer events."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from chorus.events.queue import EventQueue
from chorus.storage.models import Timer
from chorus.timers.worker import TimerWorker
from tests.conftest import SESSION_KEY


@pytest.fixture
def queue() -> MagicMock:
    q = MagicMock(spec=EventQueue)
    return q


@pytest.fixture
def worker(db, timer_store, event_store, queue, settings) -> TimerWorker:
    return TimerWorker(db, timer_store, event_store, queue, settings)


class TestPollAndPromote:
    @pytest.mark.asyncio
    async def test_promotes_due_timer(self, worker, timer_store, event_store, queue):
        await timer_store.upsert_timer(SESSION_KEY, "nudge", 1_000, {"hint": "check in"})
        await timer_store.upsert_timer(SESSION_KEY, "later", 10_000)

        assert await worker.poll_and_promote(now=5_000) == 1

        events = await event_store.find_by_session(SESSION_KEY)
        assert len(events) == 1
        assert events[0].type == "timer"
        assert events[0].payload == {"timer_id": "nudge", "payload": {"hint": "check in"}}
        assert (await timer_store.get_timer(SESSION_KEY, "nudge")).status == "promoted"
        assert (await timer_store.get_timer(SESSION_KEY, "later")).status == "pending"

        queue.enqueue.assert_called_once()
        args, kwargs = queue.enqueue.call_args
        assert args[0].id == events[0].id
        assert kwargs == {"detached": True}

    @pytest.mark.asyncio
    async def test_rerun_does_not_duplicate(self, worker, timer_store, event_store):
        await timer_store.upsert_timer(SESSION_KEY, "nudge", 1_000)
        assert await worker.poll_and_promote(now=5_000) == 1
        assert await worker.poll_and_promote(now=5_000) == 0
        assert len(await event_store.find_by_session(SESSION_KEY)) == 1

    @pytest.mark.asyncio
    async def test_stale_snapshot_skipped(self, worker, timer_store, event_store, queue):
        timer = await timer_store.upsert_timer(SESSION_KEY, "nudge", 1_000)
        snapshot = await timer_store.find_due(5_000)
        await timer_store.mark_promoted(timer.id)

        # Re-running with the stale snapshot finds the row no longer pending
        with patch.object(timer_store, "find_due", return_value=snapshot):
            assert await worker.poll_and_promote(now=5_000) == 0
        assert await event_store.find_by_session(SESSION_KEY) == []
        queue.enqueue.assert_not_called()

    @pytest.mark.asyncio
    async def test_legacy_key_cancelled(self, db, worker, timer_store, event_store, caplog):
        async with db.session() as session:
            session.add(Timer(session_key="user1:agent1:thread1:extra", timer_id="old", fire_at_ms=1_000))
            await session.commit()
        await timer_store.upsert_timer(SESSION_KEY, "fresh", 1_000)

        assert await worker.poll_and_promote(now=5_000) == 1

        legacy = await timer_store.get_timer("user1:agent1:thread1:extra", "old")
        assert legacy.status == "cancelled"
        assert "malformed session key" in caplog.text
        assert len(await event_store.find_by_session(SESSION_KEY)) == 1

    @pytest.mark.asyncio
    async def test_failure_isolated_per_timer(self, worker, timer_store, event_store):
        await timer_store.upsert_timer(SESSION_KEY, "a", 1_000)
        await timer_store.upsert_timer("user2:agent1:thread2", "b", 2_000)

        original = event_store.append
        calls = {"n": 0}

        async def flaky_append(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("db hiccup")
            return await original(*args, **kwargs)

        with patch.object(event_store, "append", side_effect=flaky_append):
            assert await worker.poll_and_promote(now=5_000) == 1

        # The failed promotion rolled back with its event
        assert (await timer_store.get_timer(SESSION_KEY, "a")).status == "pending"
        assert (await timer_store.get_timer("user2:agent1:thread2", "b")).status == "promoted"

    @pytest.mark.asyncio
    async def test_nothing_due(self, worker):
        assert await worker.poll_and_promote(now=0) == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_background_loop_promotes(self, db, timer_store, event_store, settings):
        queue = EventQueue(interval_ms=1)
        seen: list[str] = []

        async def processor(event) -> None:
            seen.append(event.payload["timer_id"])

        queue.start(processor)
        worker = TimerWorker(db, timer_store, event_store, queue, settings)
        await timer_store.upsert_timer(SESSION_KEY, "soon", 0)
        await worker.start()
        try:
            for _ in range(100):
                if seen:
                    break
                await asyncio.sleep(0.02)
        finally:
            await worker.stop()
            await queue.stop()
        assert seen == ["soon"]
        assert not worker.is_running

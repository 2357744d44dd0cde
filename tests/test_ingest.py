"""Tests for EventIngestor -- persistence, enqueueing and turn-taking."""

from __future__ import annotations

import pytest

from chorus.chat.connections import ConnectionManager
from chorus.effects.schemas import send_message_effect
from chorus.events.ingest import EventIngestor
from chorus.events.queue import EventQueue
from tests.conftest import NEIGHBOR_KEY, SESSION_KEY, FakeSocket


@pytest.fixture
def connections() -> ConnectionManager:
    return ConnectionManager()


@pytest.fixture
async def queue():
    q = EventQueue()
    yield q
    await q.stop()


@pytest.fixture
def ingestor(event_store, queue, outbox, timer_store, connections) -> EventIngestor:
    return EventIngestor(event_store, queue, outbox, timer_store, connections)


class TestIngest:
    @pytest.mark.asyncio
    async def test_persists_and_enqueues(self, ingestor, event_store, queue):
        event, future = await ingestor.ingest(SESSION_KEY, "user_message", {"text": "hi", "requestId": "r1"})
        assert event.seq == 1
        assert not future.done()
        assert queue.queue_depth(SESSION_KEY) == 1
        assert [e.id for e in await event_store.find_by_session(SESSION_KEY)] == [event.id]

    @pytest.mark.asyncio
    async def test_invalid_input_rejected(self, ingestor, queue):
        with pytest.raises(ValueError):
            await ingestor.ingest("user@example.com:a:t", "user_message", {"text": "hi", "requestId": "r"})
        with pytest.raises(ValueError):
            await ingestor.ingest(SESSION_KEY, "mystery", {})
        with pytest.raises(ValueError):
            await ingestor.ingest(SESSION_KEY, "user_message", {"text": ""})
        assert queue.total_depth() == 0

    @pytest.mark.asyncio
    async def test_user_message_takes_turn(self, ingestor, outbox, timer_store, connections):
        connections.register("c1", SESSION_KEY, FakeSocket())
        handle = connections.set_active_request("c1", "old-request")
        auto = await outbox.create(send_message_effect(SESSION_KEY, "thread1:1", "a1", "ping", autonomous=True))
        manual = await outbox.create(send_message_effect(SESSION_KEY, "thread1:2", "m1", "reply"))
        await timer_store.upsert_timer(SESSION_KEY, "nudge", 10**13)

        await ingestor.ingest(SESSION_KEY, "user_message", {"text": "stop", "requestId": "r2"})

        assert handle.aborted
        assert (await outbox.get(auto.id)).status == "failed"
        assert (await outbox.get(manual.id)).status == "pending"
        assert (await timer_store.get_timer(SESSION_KEY, "nudge")).status == "cancelled"

    @pytest.mark.asyncio
    async def test_synthetic_and_timer_events_do_not_take_turn(self, ingestor, timer_store, connections):
        connections.register("c1", SESSION_KEY, FakeSocket())
        handle = connections.set_active_request("c1", "streaming")
        await timer_store.upsert_timer(SESSION_KEY, "nudge", 10**13)

        await ingestor.ingest(
            SESSION_KEY, "user_message", {"text": "go on", "requestId": "r3", "synthetic": True}
        )
        await ingestor.ingest(SESSION_KEY, "tool_result", {"tool_call_id": "c1", "result": {"ok": True}})

        assert not handle.aborted
        assert (await timer_store.get_timer(SESSION_KEY, "nudge")).status == "pending"

    @pytest.mark.asyncio
    async def test_turn_stays_within_the_user(self, ingestor, connections):
        connections.register("mine", SESSION_KEY, FakeSocket())
        connections.register("theirs", NEIGHBOR_KEY, FakeSocket())
        mine = connections.set_active_request("mine", "streaming")
        theirs = connections.set_active_request("theirs", "streaming")

        await ingestor.ingest(NEIGHBOR_KEY, "user_message", {"text": "hey", "requestId": "r4"})

        assert theirs.aborted
        assert not mine.aborted

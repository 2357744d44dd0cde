"""Tests for EventStore -- append-only log and sequence allocation."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import IntegrityError

from chorus.events.store import EventStore
from chorus.session.keys import InvalidSessionKeyError
from tests.conftest import SESSION_KEY


class TestSequenceAllocation:
    @pytest.mark.asyncio
    async def test_new_session_starts_at_one(self, event_store):
        assert await event_store.get_next_seq(SESSION_KEY) == 1
        assert await event_store.get_next_seq(SESSION_KEY) == 2

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, event_store):
        await event_store.append(SESSION_KEY, "user_message", {"text": "a", "requestId": "r1"})
        other = await event_store.append("user1:agent1:thread2", "user_message", {"text": "b", "requestId": "r2"})
        assert other.seq == 1

    @pytest.mark.asyncio
    async def test_concurrent_allocations_are_unique(self, event_store):
        seqs = await asyncio.gather(*(event_store.get_next_seq(SESSION_KEY) for _ in range(20)))
        assert sorted(seqs) == list(range(1, 21))

    @pytest.mark.asyncio
    async def test_seeded_from_existing_log(self, db, event_store):
        for i in range(3):
            await event_store.append(SESSION_KEY, "user_message", {"text": f"m{i}", "requestId": f"r{i}"})

        # Fresh store (e.g. after restart) continues after max(seq)
        restarted = EventStore(db)
        assert await restarted.get_next_seq(SESSION_KEY) == 4

    @pytest.mark.asyncio
    async def test_counter_cache_is_bounded(self, db):
        store = EventStore(db, max_cached_sessions=1)
        other = "user1:agent1:thread2"
        await store.append(SESSION_KEY, "user_message", {"text": "a", "requestId": "r1"})
        await store.append(other, "user_message", {"text": "b", "requestId": "r2"})
        assert store.cached_sessions == 1

        # an evicted session re-reads its position from the log
        again = await store.append(SESSION_KEY, "user_message", {"text": "c", "requestId": "r3"})
        assert again.seq == 2
        assert store.cached_sessions == 1


class TestCreate:
    @pytest.mark.asyncio
    async def test_append_persists(self, event_store):
        event = await event_store.append(SESSION_KEY, "user_message", {"text": "hello", "requestId": "r1"})
        assert event.seq == 1
        assert event.type == "user_message"
        assert event.payload == {"text": "hello", "requestId": "r1", "synthetic": False}
        assert event.created_at.tzinfo is not None

        fetched = await event_store.get(event.id)
        assert fetched == event

    @pytest.mark.asyncio
    async def test_rejects_invalid_key(self, event_store):
        with pytest.raises(InvalidSessionKeyError):
            await event_store.create("a:b:c:d", 1, "user_message", {"text": "x", "requestId": "r"})

    @pytest.mark.asyncio
    async def test_rejects_unknown_type(self, event_store):
        with pytest.raises(ValueError):
            await event_store.create(SESSION_KEY, 1, "reboot", {})

    @pytest.mark.asyncio
    async def test_rejects_bad_payload(self, event_store):
        with pytest.raises(ValueError):
            await event_store.create(SESSION_KEY, 1, "timer", {"payload": 1})

    @pytest.mark.asyncio
    async def test_duplicate_seq_rejected(self, event_store):
        await event_store.create(SESSION_KEY, 1, "timer", {"timer_id": "t1"})
        with pytest.raises(IntegrityError):
            await event_store.create(SESSION_KEY, 1, "timer", {"timer_id": "t2"})

    @pytest.mark.asyncio
    async def test_caller_transaction_rolls_back(self, db, event_store):
        async with db.session() as session:
            await event_store.append(SESSION_KEY, "timer", {"timer_id": "t1"}, session=session)
            await session.rollback()
        assert await event_store.find_by_session(SESSION_KEY) == []


class TestFindBySession:
    @pytest.mark.asyncio
    async def test_ordered_and_filtered(self, event_store):
        for i in range(5):
            await event_store.append(SESSION_KEY, "tool_result", {"tool_call_id": f"c{i}", "result": i})
        await event_store.append("user1:agent1:other", "timer", {"timer_id": "x"})

        events = await event_store.find_by_session(SESSION_KEY)
        assert [e.seq for e in events] == [1, 2, 3, 4, 5]

        tail = await event_store.find_by_session(SESSION_KEY, after_seq=3)
        assert [e.seq for e in tail] == [4, 5]

    def test_no_mutation_api(self):
        assert not hasattr(EventStore, "update")
        assert not hasattr(EventStore, "delete")

"""Test fixtures using a throwaway SQLite database per test (aiosqlite)."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio

from chorus.agent.protocol import AgentContext, AgentStreamEvent
from chorus.config import Settings
from chorus.effects.outbox import OutboxStore
from chorus.events.schemas import EventDetail
from chorus.events.store import EventStore
from chorus.session.state import SessionStateStore
from chorus.storage.database import Database
from chorus.storage.migrator import run_migrations
from chorus.timers.store import TimerStore
from chorus.utils import utc_now

SESSION_KEY = "user1:agent1:thread1"
OTHER_KEY = "user2:agent1:thread2"
# Same thread id as SESSION_KEY under a different user
NEIGHBOR_KEY = "user2:agent1:thread1"

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeSocket:
    """Records frames; raises on the send after ``fail_after`` successful ones."""

    def __init__(self, fail_after: int | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail_after = fail_after

    async def send_json(self, data: Any) -> None:
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            raise ConnectionError("socket closed")
        self.sent.append(data)

    def frames(self, frame_type: str) -> list[dict[str, Any]]:
        return [f for f in self.sent if f["type"] == frame_type]


class ScriptedAgent:
    """Agent that replays a fixed stream and records every context it sees."""

    def __init__(
        self,
        message: str = "Hello there",
        tokens: list[str] | None = None,
        effects: list[dict[str, Any]] | None = None,
        error: str | None = None,
        delay: float = 0.0,
    ) -> None:
        self.message = message
        self.tokens = tokens if tokens is not None else [message]
        self.effects = effects or []
        self.error = error
        self.delay = delay
        self.calls: list[AgentContext] = []

    async def stream(self, context: AgentContext):
        self.calls.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            yield AgentStreamEvent(type="error", message=self.error, retryable=True)
            return
        for token in self.tokens:
            yield AgentStreamEvent(type="token", value=token)
        yield AgentStreamEvent(
            type="final",
            message=self.message,
            token_usage={"input_tokens": 10, "output_tokens": 5},
            effects=list(self.effects),
        )


def make_event(
    session_key: str = SESSION_KEY,
    seq: int = 1,
    event_type: str = "user_message",
    payload: dict[str, Any] | None = None,
    created_at: datetime | None = None,
) -> EventDetail:
    """Build an EventDetail without touching the database."""
    if payload is None:
        payload = (
            {"text": "hi", "requestId": f"req-{seq}"}
            if event_type == "user_message"
            else {"timer_id": f"t-{seq}"}
        )
    return EventDetail(
        id=uuid4(),
        session_key=session_key,
        seq=seq,
        type=event_type,
        payload=payload,
        created_at=created_at or utc_now(),
    )


# ---------------------------------------------------------------------------
# Settings / database fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Fast intervals and a file-backed SQLite database under tmp_path."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'chorus.db'}",
        event_queue_interval_ms=5,
        event_retry_base_delay_ms=10,
        effect_poll_interval_ms=20,
        timer_poll_interval_ms=20,
        agent_timeout_seconds=2.0,
        autonomy_enabled=True,
        autonomy_max_consecutive=3,
        autonomy_cooldown_ms=15000,
    )


@pytest_asyncio.fixture
async def db(settings):
    """Connected database with all tables created."""
    database = Database(settings)
    await database.connect()
    await run_migrations(database.engine)
    yield database
    await database.disconnect()


@pytest.fixture
def event_store(db) -> EventStore:
    return EventStore(db)


@pytest.fixture
def outbox(db) -> OutboxStore:
    return OutboxStore(db)


@pytest.fixture
def timer_store(db) -> TimerStore:
    return TimerStore(db)


@pytest.fixture
def state_store(db) -> SessionStateStore:
    return SessionStateStore(db)

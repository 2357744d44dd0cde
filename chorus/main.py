"""chorus entry point.

Initializes all components and starts the server:
  Settings -> Database -> stores -> EventQueue -> SessionProcessor
  -> EffectRunner -> TimerWorker -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from chorus.agent.http import HttpAgent
from chorus.agent.protocol import Agent
from chorus.chat.connections import ConnectionManager
from chorus.config import Settings
from chorus.effects.delivery import TimerScheduling, WebSocketDelivery
from chorus.effects.outbox import OutboxStore
from chorus.effects.runner import EffectRunner
from chorus.events.ingest import EventIngestor
from chorus.events.queue import EventQueue
from chorus.events.store import EventStore
from chorus.session.policy import PolicyGates
from chorus.session.processor import SessionProcessor
from chorus.session.schemas import PolicyConfig
from chorus.session.state import SessionStateStore
from chorus.storage.database import Database
from chorus.storage.migrator import run_migrations
from chorus.timers.store import TimerStore
from chorus.timers.worker import TimerWorker

logger = logging.getLogger(__name__)


async def create_components(settings: Settings, agent: Agent | None = None) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage. ``agent``
    replaces the HTTP agent client (tests, embedded use).
    """
    database = Database(settings)
    await database.connect()
    created = await run_migrations(database.engine)
    if created:
        logger.info("Created tables: %s", ", ".join(created))

    event_store = EventStore(database, max_cached_sessions=settings.event_seq_cache_size)
    outbox = OutboxStore(database)
    timer_store = TimerStore(database)
    state_store = SessionStateStore(database)
    connections = ConnectionManager(warn_limit=settings.connection_warn_limit)
    policy = PolicyGates(
        PolicyConfig(
            max_consecutive=settings.autonomy_max_consecutive,
            cooldown_ms=settings.autonomy_cooldown_ms,
        )
    )

    http_agent = None
    if agent is None:
        http_agent = HttpAgent(settings)
        await http_agent.start()
        agent = http_agent

    queue = EventQueue(
        interval_ms=settings.event_queue_interval_ms,
        max_attempts=settings.event_max_attempts,
        retry_base_delay_ms=settings.event_retry_base_delay_ms,
    )
    processor = SessionProcessor(agent, outbox, state_store, timer_store, policy, settings)
    ingestor = EventIngestor(event_store, queue, outbox, timer_store, connections)

    runner = EffectRunner(outbox, settings)
    runner.on("send_message", WebSocketDelivery(connections, settings.delivery_chunk_size).deliver)
    runner.on("schedule_timer", TimerScheduling(timer_store).schedule)

    timer_worker = TimerWorker(database, timer_store, event_store, queue, settings)

    queue.start(processor.process_event)
    await runner.start()
    await timer_worker.start()

    return {
        "database": database,
        "event_store": event_store,
        "outbox": outbox,
        "timer_store": timer_store,
        "state_store": state_store,
        "connections": connections,
        "policy": policy,
        "agent": agent,
        "http_agent": http_agent,
        "queue": queue,
        "processor": processor,
        "ingestor": ingestor,
        "runner": runner,
        "timer_worker": timer_worker,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down chorus...")

    timer_worker = components.get("timer_worker")
    if timer_worker:
        await timer_worker.stop()

    runner = components.get("runner")
    if runner:
        await runner.stop()

    queue = components.get("queue")
    if queue:
        await queue.stop()

    http_agent = components.get("http_agent")
    if http_agent:
        await http_agent.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("chorus shutdown complete.")


def build_app(settings: Settings, agent: Agent | None = None) -> Starlette:
    """Build the Starlette app; components come alive in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings, agent=agent))
        app.state.components = components
        logger.info(
            "chorus started (autonomy=%s, max_consecutive=%d, cooldown=%dms)",
            "on" if settings.autonomy_enabled else "off",
            settings.autonomy_max_consecutive,
            settings.autonomy_cooldown_ms,
        )
        yield
        await shutdown_components(components)

    from chorus.api.rest import create_app

    return create_app(
        ingestor=_lazy_component(components, "ingestor"),
        event_store=_lazy_component(components, "event_store"),
        outbox=_lazy_component(components, "outbox"),
        queue=_lazy_component(components, "queue"),
        connections=_lazy_component(components, "connections"),
        runner=_lazy_component(components, "runner"),
        database=_lazy_component(components, "database"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    """Create a lazy proxy for a component that will be initialized in lifespan."""
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if settings.database_url:
        logger.info("Database: %s", settings.database_url.split("://", 1)[0])
    else:
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)
    if not settings.agent_url:
        logger.warning("CHORUS_AGENT_URL is not set -- events will fail at the agent call")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()

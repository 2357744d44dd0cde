"""Connection manager -- live client sockets, grouped by session.

Tracks every open client connection, which session it watches, and the
request currently streaming on it. The manager is the only place that
holds abort handles, so turn-taking (a new user message interrupting a
reply) and disconnects both go through here.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from chorus.session.keys import parse_session_key
from chorus.utils import utc_now

logger = logging.getLogger(__name__)

ABORT_DISCONNECTED = "disconnected"
ABORT_SUPERSEDED = "superseded"
ABORT_CANCELLED = "cancelled"


class Socket(Protocol):
    """Anything that can push a JSON frame to a client."""

    async def send_json(self, data: Any) -> None: ...


class AbortHandle:
    """One-shot cancellation token for a streaming request."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def abort(self, reason: str = ABORT_CANCELLED) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class ConnectionState:
    connection_id: str
    session_key: str
    thread_id: str
    socket: Socket
    order: int
    connected_at: datetime = field(default_factory=utc_now)
    active_request_id: str | None = None
    abort: AbortHandle | None = None
    message_count: int = 0


class ConnectionManager:
    """Registry of live connections keyed by connection id."""

    def __init__(self, warn_limit: int = 5) -> None:
        self._connections: dict[str, ConnectionState] = {}
        self._order = itertools.count()
        self._warn_limit = warn_limit

    def register(self, connection_id: str, session_key: str, socket: Socket) -> ConnectionState:
        """Track a new connection; a reused id replaces the old entry.

        Raises InvalidSessionKeyError for a malformed key.
        """
        thread_id = parse_session_key(session_key).thread_id
        if connection_id in self._connections:
            self.unregister(connection_id)
        state = ConnectionState(
            connection_id=connection_id,
            session_key=session_key,
            thread_id=thread_id,
            socket=socket,
            order=next(self._order),
        )
        self._connections[connection_id] = state

        total = len(self._connections)
        if total > self._warn_limit:
            logger.warning("%d live connections (warn limit %d)", total, self._warn_limit)
        logger.info("Registered connection %s on %s", connection_id[:8], session_key)
        return state

    def unregister(self, connection_id: str) -> bool:
        """Abort any active request and forget the connection."""
        state = self._connections.pop(connection_id, None)
        if state is None:
            return False
        if state.abort is not None:
            state.abort.abort(ABORT_DISCONNECTED)
        logger.info(
            "Unregistered connection %s (%s, %d messages)",
            connection_id[:8],
            state.session_key,
            state.message_count,
        )
        return True

    def get(self, connection_id: str) -> ConnectionState | None:
        return self._connections.get(connection_id)

    def set_active_request(
        self,
        connection_id: str,
        request_id: str,
        abort: AbortHandle | None = None,
    ) -> AbortHandle | None:
        """Mark ``request_id`` as streaming on a connection.

        Any request already active there is aborted first. Returns the
        handle to watch, or None if the connection is gone.
        """
        state = self._connections.get(connection_id)
        if state is None:
            return None
        if state.abort is not None and state.active_request_id != request_id:
            state.abort.abort(ABORT_SUPERSEDED)
        handle = abort or AbortHandle()
        state.active_request_id = request_id
        state.abort = handle
        state.message_count += 1
        return handle

    def clear_active_request(self, connection_id: str, request_id: str | None = None) -> None:
        """Clear the active request; with ``request_id`` only if it still matches."""
        state = self._connections.get(connection_id)
        if state is None:
            return
        if request_id is not None and state.active_request_id != request_id:
            return
        state.active_request_id = None
        state.abort = None

    def abort(self, connection_id: str, request_id: str) -> bool:
        """Abort a specific request. A stale or unknown id is not an error."""
        state = self._connections.get(connection_id)
        if state is None or state.abort is None or state.active_request_id != request_id:
            logger.debug("Abort for %s on %s ignored: not active", request_id, connection_id[:8])
            return False
        state.abort.abort(ABORT_CANCELLED)
        return True

    def abort_session(self, session_key: str) -> int:
        """Abort active requests on every connection watching a session."""
        aborted = 0
        for state in self.connections_by_session(session_key):
            if state.abort is not None and not state.abort.aborted:
                state.abort.abort(ABORT_SUPERSEDED)
                aborted += 1
        if aborted:
            logger.info("Aborted %d active request(s) on %s", aborted, session_key)
        return aborted

    def connections_by_session(self, session_key: str) -> list[ConnectionState]:
        """Connections on a session, in registration order.

        Thread ids are only unique per user and agent, so routing always
        goes through the full key.
        """
        return sorted(
            (s for s in self._connections.values() if s.session_key == session_key),
            key=lambda s: s.order,
        )

    def most_recent(self, session_key: str) -> ConnectionState | None:
        states = self.connections_by_session(session_key)
        return states[-1] if states else None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

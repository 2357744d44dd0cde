"""REST + WebSocket API for chorus.

Endpoints:
  POST /events                           - Ingest an event (optionally wait for processing)
  GET  /sessions/{session_key}/events    - Event history for a session
  GET  /sessions/{session_key}/effects   - Outbox effects for a session (?status=)
  GET  /status                           - Queue depth, connections, outbox counts
  GET  /health                           - Health check (DB connectivity)
  WS   /ws?user_id=&agent_id=&thread_id= - Client connection for live delivery
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from uuid import uuid4

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from chorus.chat.connections import ConnectionManager
from chorus.chat.protocol import CancelFrame, error_frame, parse_client_frame
from chorus.config import Settings
from chorus.effects.outbox import OutboxStore
from chorus.effects.runner import EffectRunner
from chorus.effects.schemas import EFFECT_STATUSES
from chorus.events.ingest import EventIngestor
from chorus.events.queue import EventProcessingError, EventQueue
from chorus.events.store import EventStore
from chorus.session.keys import InvalidSessionKeyError, build_session_key
from chorus.storage.database import Database

logger = logging.getLogger(__name__)


def create_app(
    ingestor: EventIngestor,
    event_store: EventStore,
    outbox: OutboxStore,
    queue: EventQueue,
    connections: ConnectionManager,
    runner: EffectRunner,
    database: Database,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def post_event(request: Request) -> JSONResponse:
        """POST /events - Append an event and enqueue it."""
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Body must be a JSON object"}, status_code=400)

        wait = bool(body.get("wait", False))
        try:
            event, future = await ingestor.ingest(
                body.get("session_key"),
                body.get("type"),
                body.get("payload") or {},
                detached=not wait,
            )
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        result: dict[str, Any] = {"event": event.model_dump(mode="json")}
        if not wait:
            result["status"] = "queued"
            return JSONResponse(result, status_code=202)

        # wait() instead of awaiting directly: a cancelled handle must not
        # look like cancellation of this request
        await asyncio.wait([future])
        if future.cancelled():
            result["status"] = "cancelled"
            return JSONResponse(result, status_code=503)
        exc = future.exception()
        if isinstance(exc, EventProcessingError):
            result.update(status="failed", error=str(exc), attempts=exc.attempts)
            return JSONResponse(result, status_code=502)
        if exc is not None:
            raise exc
        result["status"] = "processed"
        return JSONResponse(result)

    async def session_events(request: Request) -> JSONResponse:
        """GET /sessions/{session_key}/events - Ordered event history."""
        session_key = request.path_params["session_key"]
        try:
            after_seq = request.query_params.get("after_seq")
            events = await event_store.find_by_session(
                session_key,
                after_seq=int(after_seq) if after_seq is not None else None,
            )
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse({
            "session_key": session_key,
            "events": [e.model_dump(mode="json") for e in events],
            "total": len(events),
        })

    async def session_effects(request: Request) -> JSONResponse:
        """GET /sessions/{session_key}/effects - Outbox entries for a session."""
        session_key = request.path_params["session_key"]
        status = request.query_params.get("status")
        if status is not None and status not in EFFECT_STATUSES:
            return JSONResponse({"error": f"Unknown status: {status}"}, status_code=400)
        try:
            effects = await outbox.list_by_session(session_key, status=status)
        except InvalidSessionKeyError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse({
            "session_key": session_key,
            "effects": [e.model_dump(mode="json") for e in effects],
            "total": len(effects),
        })

    async def status(request: Request) -> JSONResponse:
        """GET /status - Pipeline overview."""
        return JSONResponse({
            "queue": {
                "started": queue.is_started,
                "depth": queue.total_depth(),
                "pending_retries": queue.pending_retries,
            },
            "connections": connections.connection_count,
            "effects": await outbox.count_by_status(),
            "autonomy": {
                "enabled": settings.autonomy_enabled,
                "max_consecutive": settings.autonomy_max_consecutive,
                "cooldown_ms": settings.autonomy_cooldown_ms,
            },
        })

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            await database.connect()
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    # ------------------------------------------------------------------
    # WebSocket
    # ------------------------------------------------------------------

    async def ws_endpoint(websocket: WebSocket) -> None:
        """WS /ws - Live delivery and inbound chat frames for one thread."""
        params = websocket.query_params
        thread_id = params.get("thread_id", "")
        try:
            session_key = build_session_key(
                params.get("user_id", ""), params.get("agent_id", ""), thread_id
            )
        except InvalidSessionKeyError as e:
            logger.info("Rejected websocket: %s", e)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        connection_id = uuid4().hex
        connections.register(connection_id, session_key, websocket)
        try:
            await runner.poll_for_session(session_key)
            while True:
                text = await websocket.receive_text()
                await _handle_frame(websocket, connection_id, session_key, thread_id, text)
        except WebSocketDisconnect:
            pass
        finally:
            connections.unregister(connection_id)

    async def _handle_frame(
        websocket: WebSocket,
        connection_id: str,
        session_key: str,
        thread_id: str,
        text: str,
    ) -> None:
        try:
            data = json.loads(text)
        except ValueError:
            await websocket.send_json(error_frame(None, "Invalid JSON frame", retryable=False))
            return
        try:
            frame = parse_client_frame(data)
        except ValueError as e:
            request_id = data.get("requestId") if isinstance(data, dict) else None
            await websocket.send_json(error_frame(request_id, f"Invalid frame: {e}", retryable=False))
            return

        if isinstance(frame, CancelFrame):
            connections.abort(connection_id, frame.request_id)
            return

        if frame.thread_id != thread_id:
            await websocket.send_json(
                error_frame(frame.request_id, "threadId does not match this connection", retryable=False)
            )
            return
        try:
            await ingestor.ingest(
                session_key,
                "user_message",
                {"text": frame.content, "requestId": frame.request_id},
                detached=True,
            )
        except ValueError as e:
            await websocket.send_json(error_frame(frame.request_id, str(e), retryable=False))

    routes = [
        Route("/events", post_event, methods=["POST"]),
        Route("/sessions/{session_key}/events", session_events),
        Route("/sessions/{session_key}/effects", session_effects),
        Route("/status", status),
        Route("/health", health),
        WebSocketRoute("/ws", ws_endpoint),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)

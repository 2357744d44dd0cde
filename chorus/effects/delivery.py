"""Effect handlers: push messages to live clients, arm timers."""

from __future__ import annotations

import asyncio
import logging

from chorus.chat.connections import ABORT_DISCONNECTED, ConnectionManager
from chorus.chat.protocol import error_frame, final_frame, token_frame
from chorus.effects.schemas import (
    DeliveryOutcome,
    EffectDetail,
    ScheduleTimerPayload,
    SendMessagePayload,
)
from chorus.timers.store import TimerStore
from chorus.utils import short_id, utc_now

logger = logging.getLogger(__name__)


class WebSocketDelivery:
    """Streams send_message effects to the newest connection on the session.

    The message goes out as token frames of ``chunk_size`` characters
    followed by one final frame. Only a complete stream counts as
    delivered.
    """

    def __init__(self, connections: ConnectionManager, chunk_size: int = 32) -> None:
        self._connections = connections
        self._chunk_size = chunk_size

    async def deliver(self, effect: EffectDetail) -> DeliveryOutcome:
        conn = self._connections.most_recent(effect.session_key)
        if conn is None:
            logger.debug("No connection for %s, deferring %s", effect.session_key, short_id(effect.id))
            return "deferred"

        body = SendMessagePayload.model_validate(effect.payload)
        request_id = body.request_id
        abort = self._connections.set_active_request(conn.connection_id, request_id)
        if abort is None:
            return "deferred"

        try:
            for chunk in self._chunks(body.message):
                if abort.aborted:
                    break
                await conn.socket.send_json(token_frame(request_id, chunk))
                # Let cancel frames and new messages in between chunks
                await asyncio.sleep(0)

            if abort.aborted:
                if abort.reason == ABORT_DISCONNECTED:
                    logger.debug("Connection closed mid-stream for %s, deferring", request_id)
                    return "deferred"
                logger.info("Delivery of %s aborted (%s)", request_id, abort.reason)
                return "cancelled"

            latency_ms = int((utc_now() - effect.created_at).total_seconds() * 1000)
            await conn.socket.send_json(
                final_frame(request_id, body.message, latency_ms, body.token_usage)
            )
            logger.debug("Delivered %s to %s (%dms)", request_id, conn.connection_id[:8], latency_ms)
            return "delivered"

        except Exception as exc:
            logger.warning("Delivery of %s failed: %s", request_id, exc)
            try:
                await conn.socket.send_json(
                    error_frame(request_id, "Delivery interrupted", retryable=True)
                )
            except Exception:
                logger.debug("Could not send error frame for %s", request_id)
            return "failed"

        finally:
            self._connections.clear_active_request(conn.connection_id, request_id)

    def _chunks(self, message: str) -> list[str]:
        size = self._chunk_size
        return [message[i:i + size] for i in range(0, len(message), size)]


class TimerScheduling:
    """Arms the timer described by a schedule_timer effect."""

    def __init__(self, timer_store: TimerStore) -> None:
        self._timers = timer_store

    async def schedule(self, effect: EffectDetail) -> DeliveryOutcome:
        try:
            body = ScheduleTimerPayload.model_validate(effect.payload)
        except ValueError as exc:
            logger.warning("Malformed schedule_timer effect %s: %s", short_id(effect.id), exc)
            return "cancelled"
        await self._timers.upsert_timer(effect.session_key, body.timer_id, body.fire_at_ms, body.payload)
        return "delivered"

"""Effect runner -- polls the outbox and dispatches effects to handlers.

Each poll claims pending effects (pending -> executing), hands them to the
handler registered for their type, and records the outcome:

  delivered  -> completed
  deferred   -> pending (no target yet; retried on a later poll)
  failed     -> pending, or failed once the attempt budget is spent
  cancelled  -> failed

Effects of one session are handled sequentially in creation order;
different sessions run concurrently. A failure on one effect never stops
the rest of the batch, and a claim whose outcome could not be recorded is
handed back to pending (or reclaimed once stale).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence

from chorus.config import Settings
from chorus.effects.outbox import OutboxStore
from chorus.effects.schemas import DeliveryOutcome, EffectDetail
from chorus.utils import short_id

logger = logging.getLogger(__name__)

EffectHandler = Callable[[EffectDetail], Awaitable[DeliveryOutcome]]


class EffectRunner:
    """Background dispatcher for outbox effects."""

    def __init__(self, outbox: OutboxStore, settings: Settings) -> None:
        self._outbox = outbox
        self._settings = settings
        self._handlers: dict[str, EffectHandler] = {}
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._running = False
        self._last_reclaim = 0.0

    def on(self, effect_type: str, handler: EffectHandler) -> None:
        """Register the handler for an effect type (replaces any previous one)."""
        self._handlers[effect_type] = handler

    async def start(self) -> None:
        """Reclaim abandoned claims, then poll immediately and periodically."""
        reclaimed = await self._outbox.reclaim_stale(self._settings.effect_stale_after_seconds)
        self._last_reclaim = time.monotonic()
        if reclaimed:
            logger.info("Reclaimed %d stale effect(s) on startup", reclaimed)

        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="effect-runner")
        logger.info(
            "Effect runner started (poll=%dms, handlers=%s)",
            self._settings.effect_poll_interval_ms,
            sorted(self._handlers),
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Effect runner stopped")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        interval = self._settings.effect_poll_interval_ms / 1000
        while self._running:
            try:
                await self.reclaim_if_due()
                await self.process_effects()
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Effect poll failed")
                await asyncio.sleep(interval)

    async def reclaim_if_due(self, now: float | None = None) -> int:
        """Revert stale claims at most once per staleness window.

        Runs under the batch lock, so nothing this runner is executing can
        be mistaken for an abandoned claim.
        """
        stale_after = self._settings.effect_stale_after_seconds
        now = time.monotonic() if now is None else now
        if now - self._last_reclaim < stale_after:
            return 0
        async with self._lock:
            self._last_reclaim = now
            return await self._outbox.reclaim_stale(stale_after)

    async def process_effects(self) -> int:
        """Run one batch. Returns the number of effects completed."""
        async with self._lock:
            pending = await self._outbox.get_pending(limit=self._settings.effect_batch_size)
            if not pending:
                return 0

            by_session: dict[str, list[EffectDetail]] = {}
            for effect in pending:
                by_session.setdefault(effect.session_key, []).append(effect)

            results = await asyncio.gather(
                *(self._run_sequence(effects) for effects in by_session.values())
            )
            return sum(results)

    async def poll_for_session(self, session_key: str) -> int:
        """Flush a session's pending effects now (e.g. on reconnect)."""
        async with self._lock:
            pending = await self._outbox.get_pending(
                limit=self._settings.effect_batch_size,
                session_key=session_key,
            )
            if pending:
                logger.debug("Flushing %d pending effect(s) for %s", len(pending), session_key)
            return await self._run_sequence(pending)

    async def _run_sequence(self, effects: Sequence[EffectDetail]) -> int:
        """Handle one session's effects in order.

        Once a message is not delivered, later messages of the session wait
        for the next poll so clients never see them out of order.
        """
        completed = 0
        messages_blocked = False
        for effect in effects:
            if messages_blocked and effect.type == "send_message":
                continue
            try:
                outcome = await self._execute(effect)
            except Exception:
                logger.exception("Effect %s could not be processed", short_id(effect.id))
                outcome = "failed"
            if outcome == "delivered":
                completed += 1
            elif effect.type == "send_message":
                messages_blocked = True
        return completed

    # ------------------------------------------------------------------
    # Single effect
    # ------------------------------------------------------------------

    async def _execute(self, effect: EffectDetail) -> DeliveryOutcome | None:
        handler = self._handlers.get(effect.type)
        if handler is None:
            logger.error("No handler for effect type %s (%s)", effect.type, short_id(effect.id))
            await self._outbox.update_status(effect.id, "failed")
            return "failed"

        if not await self._outbox.claim(effect.id):
            logger.debug("Effect %s already claimed, skipping", short_id(effect.id))
            return None

        try:
            outcome = await handler(effect)
        except asyncio.CancelledError:
            await self._release(effect)
            raise
        except Exception:
            logger.exception("Handler for effect %s raised", short_id(effect.id))
            outcome = "failed"

        try:
            await self._record(effect, outcome)
        except Exception:
            logger.exception("Could not record %s for effect %s", outcome, short_id(effect.id))
            await self._release(effect)
            return "failed"
        return outcome

    async def _release(self, effect: EffectDetail) -> None:
        """Hand a claimed effect back to pending; stale reclaim covers a failure here."""
        try:
            await self._outbox.update_status(effect.id, "pending")
        except Exception:
            logger.exception("Could not release effect %s", short_id(effect.id))

    async def _record(self, effect: EffectDetail, outcome: DeliveryOutcome) -> None:
        if outcome == "delivered":
            await self._outbox.update_status(effect.id, "completed", increment_attempt=True)
        elif outcome == "deferred":
            await self._outbox.update_status(effect.id, "pending")
            logger.debug("Effect %s deferred", short_id(effect.id))
        elif outcome == "cancelled":
            await self._outbox.update_status(effect.id, "failed", increment_attempt=True)
            logger.info("Effect %s cancelled", short_id(effect.id))
        else:
            attempts = effect.attempt_count + 1
            if attempts >= self._settings.effect_max_attempts:
                await self._outbox.update_status(effect.id, "failed", increment_attempt=True)
                logger.error(
                    "Effect %s failed permanently after %d attempt(s)",
                    short_id(effect.id),
                    attempts,
                )
            else:
                await self._outbox.update_status(effect.id, "pending", increment_attempt=True)
                logger.warning(
                    "Effect %s failed (attempt %d/%d), will retry",
                    short_id(effect.id),
                    attempts,
                    self._settings.effect_max_attempts,
                )

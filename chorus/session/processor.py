"""Session processor -- turns one event into outbox effects.

Called by the event queue with at most one event per session in flight.
For each event it:
1. Loads the session's autonomy streak
2. Applies turn-taking (user messages) or the policy gates (timers)
3. Runs the agent under a time budget
4. Writes the resulting effects to the outbox in one transaction
5. Persists updated counters and the last processed seq

The processor never talks to clients; delivery is the effect runner's job.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import ValidationError

from chorus.agent.protocol import (
    Agent,
    AgentContext,
    AgentStreamError,
    AgentStreamEvent,
    AgentTimeoutError,
)
from chorus.config import Settings
from chorus.effects.outbox import OutboxStore
from chorus.effects.schemas import (
    EffectDetail,
    EffectInput,
    ScheduleTimerRequest,
    schedule_timer_effect,
    send_message_effect,
)
from chorus.events.schemas import EventDetail
from chorus.session.keys import ParsedSessionKey, parse_session_key
from chorus.session.policy import PolicyGates
from chorus.session.state import SessionStateStore
from chorus.timers.store import TimerStore
from chorus.utils import now_ms, short_id

logger = logging.getLogger(__name__)


class SessionProcessor:
    def __init__(
        self,
        agent: Agent,
        outbox: OutboxStore,
        state_store: SessionStateStore,
        timer_store: TimerStore,
        policy: PolicyGates,
        settings: Settings,
    ) -> None:
        self._agent = agent
        self._outbox = outbox
        self._state = state_store
        self._timers = timer_store
        self._policy = policy
        self._settings = settings

    async def process_event(self, event: EventDetail) -> list[EffectDetail]:
        """Process one event. Raises to let the queue apply its retry policy."""
        key = parse_session_key(event.session_key)
        state = await self._state.get(event.session_key)
        autonomy = state.autonomy
        autonomous = event.type == "timer"

        if event.is_genuine_user_message:
            cleared = await self._outbox.clear_pending_by_session(event.session_key, autonomous_only=True)
            cancelled = await self._timers.cancel_by_session(event.session_key)
            if cleared or cancelled:
                logger.debug(
                    "Reset %s: cleared %d effect(s), cancelled %d timer(s)",
                    event.session_key, cleared, cancelled,
                )
            autonomy = self._policy.reset_on_user_message()

        elif autonomous:
            if not self._settings.autonomy_enabled:
                logger.info("Autonomy disabled, dropping timer event %s on %s", short_id(event.id), event.session_key)
                await self._state.save(event.session_key, autonomy, last_event_seq=event.seq)
                return []
            check = self._policy.check_can_send_autonomous(autonomy)
            if not check.allowed:
                logger.info(
                    "Autonomous send blocked on %s (%s): %s",
                    event.session_key, check.blocked_by, check.reason,
                )
                await self._state.save(event.session_key, autonomy, last_event_seq=event.seq)
                return []

        context = AgentContext(
            session_key=event.session_key,
            user_id=key.user_id,
            agent_id=key.agent_id,
            thread_id=key.thread_id,
            event_id=event.id,
            event_type=event.type,
            message=event.payload.get("text") if event.type == "user_message" else None,
            payload=event.payload,
            autonomy=autonomy,
            is_user_message=event.type == "user_message",
        )
        final = await self._run_agent(context)

        effects = self._build_effects(event, key, final, autonomous)
        created = await self._outbox.create_effects(effects)

        if autonomous and any(e.type == "send_message" for e in created):
            autonomy = self._policy.update_counters_after_send(autonomy)
        await self._state.save(event.session_key, autonomy, last_event_seq=event.seq)

        logger.debug(
            "Processed %s event %s (%s #%d): %d effect(s)",
            event.type, short_id(event.id), event.session_key, event.seq, len(created),
        )
        return created

    # ------------------------------------------------------------------
    # Agent invocation
    # ------------------------------------------------------------------

    async def _run_agent(self, context: AgentContext) -> AgentStreamEvent:
        timeout = self._settings.agent_timeout_seconds
        try:
            return await asyncio.wait_for(self._consume(context), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise AgentTimeoutError(
                f"Agent did not finish within {timeout}s for {context.session_key}"
            ) from exc

    async def _consume(self, context: AgentContext) -> AgentStreamEvent:
        tokens: list[str] = []
        final: AgentStreamEvent | None = None
        async for chunk in self._agent.stream(context):
            if chunk.type == "token":
                tokens.append(chunk.value)
            elif chunk.type == "error":
                raise AgentStreamError(chunk.message, retryable=chunk.retryable)
            elif chunk.type == "final":
                final = chunk
                break

        if final is None:
            if not tokens:
                raise AgentStreamError("Agent stream ended without a final message", retryable=True)
            final = AgentStreamEvent(type="final", message="".join(tokens))
        elif not final.message and tokens:
            final.message = "".join(tokens)
        return final

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    def _build_effects(
        self,
        event: EventDetail,
        key: ParsedSessionKey,
        final: AgentStreamEvent,
        autonomous: bool,
    ) -> list[EffectInput]:
        checkpoint_id = f"{key.thread_id}:{event.seq}"
        effects: list[EffectInput] = []

        if final.message:
            if event.type == "user_message":
                request_id = event.payload["requestId"]
            else:
                request_id = f"{event.type}-{event.id.hex[:12]}"
            effects.append(
                send_message_effect(
                    event.session_key,
                    checkpoint_id,
                    request_id,
                    final.message,
                    token_usage=final.token_usage,
                    autonomous=autonomous,
                )
            )
        else:
            logger.debug("Agent returned no message for %s #%d", event.session_key, event.seq)

        for raw in final.effects:
            if raw.get("type") != "schedule_timer":
                logger.warning("Ignoring unsupported agent effect %r on %s", raw.get("type"), event.session_key)
                continue
            if not self._settings.autonomy_enabled:
                logger.info("Autonomy disabled, ignoring timer request on %s", event.session_key)
                continue
            try:
                request = ScheduleTimerRequest.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Malformed timer request on %s: %s", event.session_key, exc)
                continue
            effects.append(
                schedule_timer_effect(
                    event.session_key,
                    checkpoint_id,
                    request.timer_id,
                    now_ms() + int(request.delay_seconds * 1000),
                    request.payload,
                )
            )
        return effects

"""Pydantic DTOs for outbox effects.

An effect is a durable intent to do something visible outside the process
(send a message, schedule a timer). Effects are written before they are
executed, and the dedupe key makes re-running the same step harmless.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chorus.session.keys import validate_session_key

EffectType = Literal["send_message", "schedule_timer"]
EffectStatus = Literal["pending", "executing", "completed", "failed"]
DeliveryOutcome = Literal["delivered", "deferred", "failed", "cancelled"]

EFFECT_STATUSES: tuple[str, ...] = ("pending", "executing", "completed", "failed")


class SendMessagePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId", min_length=1)
    message: str
    token_usage: dict[str, Any] | None = Field(default=None, alias="tokenUsage")


class ScheduleTimerPayload(BaseModel):
    timer_id: str = Field(min_length=1)
    fire_at_ms: int = Field(ge=0)
    payload: Any = None


class ScheduleTimerRequest(BaseModel):
    """What an agent asks for; converted to an absolute fire time."""

    timer_id: str = Field(min_length=1)
    delay_seconds: float = Field(ge=0)
    payload: Any = None


class EffectInput(BaseModel):
    session_key: str
    checkpoint_id: str = Field(min_length=1)
    type: EffectType
    payload: dict[str, Any]
    dedupe_key: str = Field(min_length=64, max_length=64)
    autonomous: bool = False

    @field_validator("session_key")
    @classmethod
    def _check_key(cls, value: str) -> str:
        return validate_session_key(value)


class EffectDetail(BaseModel):
    id: UUID
    session_key: str
    checkpoint_id: str
    type: EffectType
    payload: dict[str, Any]
    dedupe_key: str
    status: EffectStatus
    attempt_count: int
    autonomous: bool
    created_at: datetime
    updated_at: datetime
    last_attempt_at: datetime | None = None


def generate_dedupe_key(
    session_key: str,
    checkpoint_id: str,
    effect_type: str,
    discriminator: str = "",
) -> str:
    """Deterministic sha256 over the identity of an effect.

    The same processing step (session, checkpoint, type, discriminator)
    always yields the same key, so a retried step cannot double-write.
    """
    raw = json.dumps(
        {
            "session_key": session_key,
            "checkpoint_id": checkpoint_id,
            "type": effect_type,
            "discriminator": discriminator,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(raw.encode()).hexdigest()


def send_message_effect(
    session_key: str,
    checkpoint_id: str,
    request_id: str,
    message: str,
    token_usage: dict[str, Any] | None = None,
    autonomous: bool = False,
) -> EffectInput:
    payload = SendMessagePayload(request_id=request_id, message=message, token_usage=token_usage)
    return EffectInput(
        session_key=session_key,
        checkpoint_id=checkpoint_id,
        type="send_message",
        payload=payload.model_dump(by_alias=True, exclude_none=True),
        dedupe_key=generate_dedupe_key(session_key, checkpoint_id, "send_message", "final"),
        autonomous=autonomous,
    )


def schedule_timer_effect(
    session_key: str,
    checkpoint_id: str,
    timer_id: str,
    fire_at_ms: int,
    payload: Any = None,
) -> EffectInput:
    body = ScheduleTimerPayload(timer_id=timer_id, fire_at_ms=fire_at_ms, payload=payload)
    return EffectInput(
        session_key=session_key,
        checkpoint_id=checkpoint_id,
        type="schedule_timer",
        payload=body.model_dump(),
        dedupe_key=generate_dedupe_key(session_key, checkpoint_id, "schedule_timer", timer_id),
        autonomous=True,
    )

"""Pydantic DTOs for the event log.

Events are immutable records of something that happened to a session:
a user message, a fired timer, or a completed tool call.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chorus.session.keys import validate_session_key

EventType = Literal["user_message", "timer", "tool_result"]

EVENT_TYPES: tuple[str, ...] = ("user_message", "timer", "tool_result")


class UserMessagePayload(BaseModel):
    text: str = Field(min_length=1)
    request_id: str = Field(alias="requestId", min_length=1)
    synthetic: bool = False  # true for system-generated follow-up prompts

    model_config = ConfigDict(populate_by_name=True)


class TimerPayload(BaseModel):
    timer_id: str = Field(min_length=1)
    payload: Any = None


class ToolResultPayload(BaseModel):
    tool_call_id: str = Field(min_length=1)
    result: Any = None


_PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    "user_message": UserMessagePayload,
    "timer": TimerPayload,
    "tool_result": ToolResultPayload,
}


def validate_payload(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Validate a payload against its event type and return the wire form."""
    model = _PAYLOAD_MODELS.get(event_type)
    if model is None:
        raise ValueError(f"Unsupported event type: {event_type}")
    return model.model_validate(payload).model_dump(by_alias=True, exclude_none=True)


class EventInput(BaseModel):
    """Inbound occurrence, before a sequence number is assigned."""

    session_key: str
    type: EventType
    payload: dict[str, Any] = {}

    @field_validator("session_key")
    @classmethod
    def _check_key(cls, value: str) -> str:
        return validate_session_key(value)


class EventDetail(BaseModel):
    """A persisted event."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    session_key: str
    seq: int
    type: EventType
    payload: dict[str, Any]
    created_at: datetime

    @property
    def is_genuine_user_message(self) -> bool:
        return self.type == "user_message" and not self.payload.get("synthetic", False)

"""Pydantic DTOs for session-level state and autonomy policy."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

BlockedBy = Literal["hard_cap", "cooldown"]


class AutonomyMetadata(BaseModel):
    """Autonomous-send streak for one session.

    Incremented after every autonomous send, zeroed by any genuine
    user message.
    """

    consecutive_autonomous_messages: int = Field(default=0, ge=0)
    last_autonomous_at: datetime | None = None


class PolicyConfig(BaseModel):
    max_consecutive: int = Field(gt=0)
    cooldown_ms: int = Field(gt=0)


class PolicyCheckResult(BaseModel):
    allowed: bool
    reason: str | None = None
    blocked_by: BlockedBy | None = None


class SessionStateDetail(BaseModel):
    session_key: str
    autonomy: AutonomyMetadata
    last_event_seq: int = 0

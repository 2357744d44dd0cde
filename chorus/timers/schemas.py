"""Pydantic DTOs for scheduled timers."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel

TimerStatus = Literal["pending", "promoted", "cancelled"]


class TimerDetail(BaseModel):
    """A stored timer.

    ``session_key`` is returned as stored: rows written before the
    three-segment key format may hold values that no longer validate.
    """

    id: UUID
    session_key: str
    timer_id: str
    fire_at_ms: int
    payload: Any = None
    status: TimerStatus
    created_at: datetime
    updated_at: datetime
    cancelled_at: datetime | None = None

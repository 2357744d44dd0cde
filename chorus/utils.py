"""Shared utility functions for chorus."""

from __future__ import annotations

import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(UTC)


def now_ms() -> int:
    """Wall-clock epoch milliseconds, the unit timers are scheduled in."""
    return int(time.time() * 1000)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite.

    Postgres returns aware values for timestamptz columns; SQLite drops
    the offset, so both paths are normalized here.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def short_id(value: object) -> str:
    """First 8 hex chars of a UUID (or string) for log lines."""
    text = getattr(value, "hex", None) or str(value)
    return text[:8]

"""SQLAlchemy ORM models for the event log, outbox, timers and session state.

Column types are portable: JSON is stored as JSONB on Postgres and as JSON
text on SQLite, UUIDs use the generic Uuid type.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from chorus.utils import utc_now

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Single declarative base for all tables."""

    pass


# =============================================================================
# EVENT LOG (append-only)
# =============================================================================


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        UniqueConstraint("session_key", "seq", name="uq_events_session_seq"),
        CheckConstraint(
            "type IN ('user_message', 'timer', 'tool_result')",
            name="ck_events_type",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_key: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, server_default=func.now()
    )


# =============================================================================
# OUTBOX
# =============================================================================


class Effect(Base):
    """Durable intended side effect (transactional outbox entry)."""

    __tablename__ = "effects"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_effects_dedupe_key"),
        CheckConstraint(
            "type IN ('send_message', 'schedule_timer')",
            name="ck_effects_type",
        ),
        CheckConstraint(
            "status IN ('pending', 'executing', 'completed', 'failed')",
            name="ck_effects_status",
        ),
        Index("ix_effects_status_created", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_key: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    checkpoint_id: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    dedupe_key: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", server_default="pending")
    autonomous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now, server_default=func.now()
    )
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


# =============================================================================
# TIMERS
# =============================================================================


class Timer(Base):
    """Scheduled future event, promoted by the timer worker when due."""

    __tablename__ = "timers"
    __table_args__ = (
        UniqueConstraint("session_key", "timer_id", name="uq_timers_session_timer"),
        CheckConstraint(
            "status IN ('pending', 'promoted', 'cancelled')",
            name="chk_timer_status",
        ),
        Index("ix_timers_status_fire_at", "status", "fire_at_ms"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # Not validated on write: legacy rows may carry malformed keys
    session_key: Mapped[str] = mapped_column(String(200), nullable=False)
    timer_id: Mapped[str] = mapped_column(String(200), nullable=False)
    fire_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", server_default="pending")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now, server_default=func.now()
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


# =============================================================================
# SESSION STATE
# =============================================================================


class SessionState(Base):
    """Per-session autonomy counters and processing cursor."""

    __tablename__ = "session_state"

    session_key: Mapped[str] = mapped_column(String(200), primary_key=True)
    consecutive_autonomous_messages: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    last_autonomous_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_event_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now, server_default=func.now()
    )

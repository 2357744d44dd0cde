"""Session state store -- autonomy counters and last processed seq."""

import logging

from chorus.session.keys import validate_session_key
from chorus.session.schemas import AutonomyMetadata, SessionStateDetail
from chorus.storage.database import Database
from chorus.storage.models import SessionState
from chorus.utils import ensure_utc

logger = logging.getLogger(__name__)


class SessionStateStore:
    """Manages per-session rows in session_state."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def get(self, session_key: str) -> SessionStateDetail:
        """Load state for a session, defaulting to a zeroed streak."""
        validate_session_key(session_key)
        async with self._db.session() as session:
            row = await session.get(SessionState, session_key)
            if row is None:
                return SessionStateDetail(session_key=session_key, autonomy=AutonomyMetadata())
            return self._to_detail(row)

    async def save(
        self,
        session_key: str,
        autonomy: AutonomyMetadata,
        last_event_seq: int | None = None,
    ) -> SessionStateDetail:
        """Insert or update the session's counters."""
        validate_session_key(session_key)
        async with self._db.session() as session:
            row = await session.get(SessionState, session_key)
            if row is None:
                row = SessionState(session_key=session_key)
                session.add(row)
            row.consecutive_autonomous_messages = autonomy.consecutive_autonomous_messages
            row.last_autonomous_at = autonomy.last_autonomous_at
            if last_event_seq is not None:
                row.last_event_seq = max(row.last_event_seq or 0, last_event_seq)
            await session.commit()
            logger.debug(
                "Saved state for %s (streak=%d, seq=%s)",
                session_key,
                autonomy.consecutive_autonomous_messages,
                row.last_event_seq,
            )
            return self._to_detail(row)

    @staticmethod
    def _to_detail(row: SessionState) -> SessionStateDetail:
        return SessionStateDetail(
            session_key=row.session_key,
            autonomy=AutonomyMetadata(
                consecutive_autonomous_messages=row.consecutive_autonomous_messages or 0,
                last_autonomous_at=ensure_utc(row.last_autonomous_at),
            ),
            last_event_seq=row.last_event_seq or 0,
        )

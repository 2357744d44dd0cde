"""Outbox store -- durable effects with dedupe and atomic claiming."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import timedelta
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from chorus.effects.schemas import EFFECT_STATUSES, EffectDetail, EffectInput
from chorus.session.keys import validate_session_key
from chorus.storage.database import Database
from chorus.storage.models import Effect
from chorus.utils import ensure_utc, short_id, utc_now

logger = logging.getLogger(__name__)


class OutboxStore:
    """Manages rows in the effects table.

    Status moves pending -> executing -> completed | failed, with
    executing -> pending for retries and crash recovery. A dedupe key
    collision means the effect already exists and is reported as None
    (or skipped), never as an error.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create(self, effect: EffectInput, status: str = "pending") -> EffectDetail | None:
        """Persist one effect. Returns None if its dedupe key already exists."""
        if status not in EFFECT_STATUSES:
            raise ValueError(f"Unsupported effect status: {status}")
        async with self._db.session() as session:
            record = self._to_record(effect, status)
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug("Effect %s already scheduled, skipping", effect.dedupe_key[:12])
                return None
            logger.debug("Created %s effect %s for %s", effect.type, short_id(record.id), effect.session_key)
            return self._to_detail(record)

    async def create_effects(self, effects: Sequence[EffectInput]) -> list[EffectDetail]:
        """Persist a batch in one transaction, skipping known dedupe keys.

        Rows in a batch get strictly increasing created_at values so their
        delivery order is the order given here.
        """
        if not effects:
            return []
        keys = [e.dedupe_key for e in effects]
        async with self._db.session() as session:
            existing = set(
                (await session.execute(select(Effect.dedupe_key).where(Effect.dedupe_key.in_(keys))))
                .scalars()
                .all()
            )
            base = utc_now()
            records: list[Effect] = []
            for effect in effects:
                if effect.dedupe_key in existing:
                    continue
                existing.add(effect.dedupe_key)
                record = self._to_record(effect, "pending")
                record.created_at = base + timedelta(microseconds=len(records))
                record.updated_at = record.created_at
                session.add(record)
                records.append(record)

            if not records:
                logger.debug("All %d effect(s) already scheduled", len(effects))
                return []
            try:
                await session.commit()
            except IntegrityError:
                # Lost a race with a concurrent writer; fall back to one-by-one
                await session.rollback()
                logger.warning("Dedupe race on effect batch, inserting individually")
                created = []
                for effect in effects:
                    detail = await self.create(effect)
                    if detail is not None:
                        created.append(detail)
                return created

            skipped = len(effects) - len(records)
            logger.info(
                "Created %d effect(s)%s",
                len(records),
                f" ({skipped} duplicate(s) skipped)" if skipped else "",
            )
            return [self._to_detail(r) for r in records]

    async def get_pending(
        self,
        limit: int = 100,
        session_key: str | None = None,
        types: Iterable[str] | None = None,
    ) -> list[EffectDetail]:
        """Pending effects, oldest first."""
        async with self._db.session() as session:
            q = (
                select(Effect)
                .where(Effect.status == "pending")
                .order_by(Effect.created_at, Effect.id)
                .limit(limit)
            )
            if session_key is not None:
                q = q.where(Effect.session_key == validate_session_key(session_key))
            if types is not None:
                q = q.where(Effect.type.in_(list(types)))
            result = await session.execute(q)
            return [self._to_detail(r) for r in result.scalars().all()]

    async def claim(self, effect_id: UUID) -> bool:
        """Atomically move pending -> executing. False if someone else has it."""
        async with self._db.session() as session:
            now = utc_now()
            result = await session.execute(
                update(Effect)
                .where(Effect.id == effect_id)
                .where(Effect.status == "pending")
                .values(status="executing", claimed_at=now, updated_at=now)
            )
            await session.commit()
            return result.rowcount > 0

    async def update_status(
        self,
        effect_id: UUID,
        status: str,
        increment_attempt: bool = False,
    ) -> bool:
        if status not in EFFECT_STATUSES:
            raise ValueError(f"Unsupported effect status: {status}")
        now = utc_now()
        values: dict = {"status": status, "updated_at": now}
        if status != "executing":
            values["claimed_at"] = None
        if increment_attempt:
            values["attempt_count"] = Effect.attempt_count + 1
            values["last_attempt_at"] = now
        async with self._db.session() as session:
            result = await session.execute(
                update(Effect).where(Effect.id == effect_id).values(**values)
            )
            await session.commit()
            return result.rowcount > 0

    async def clear_pending_by_session(self, session_key: str, autonomous_only: bool = True) -> int:
        """Mark a session's pending effects failed. Rows stay for audit."""
        validate_session_key(session_key)
        async with self._db.session() as session:
            q = (
                update(Effect)
                .where(Effect.session_key == session_key)
                .where(Effect.status == "pending")
                .values(status="failed", updated_at=utc_now())
            )
            if autonomous_only:
                q = q.where(Effect.autonomous.is_(True))
            result = await session.execute(q)
            await session.commit()
            if result.rowcount > 0:
                logger.info("Cleared %d pending effect(s) for %s", result.rowcount, session_key)
            return result.rowcount

    async def exists_by_dedupe_key(self, dedupe_key: str) -> bool:
        async with self._db.session() as session:
            found = await session.scalar(
                select(Effect.id).where(Effect.dedupe_key == dedupe_key).limit(1)
            )
            return found is not None

    async def get(self, effect_id: UUID) -> EffectDetail | None:
        async with self._db.session() as session:
            record = await session.get(Effect, effect_id)
            return self._to_detail(record) if record else None

    async def list_by_session(
        self,
        session_key: str,
        status: str | None = None,
        limit: int = 100,
    ) -> list[EffectDetail]:
        validate_session_key(session_key)
        async with self._db.session() as session:
            q = (
                select(Effect)
                .where(Effect.session_key == session_key)
                .order_by(Effect.created_at, Effect.id)
                .limit(limit)
            )
            if status:
                q = q.where(Effect.status == status)
            result = await session.execute(q)
            return [self._to_detail(r) for r in result.scalars().all()]

    async def count_by_status(self) -> dict[str, int]:
        async with self._db.session() as session:
            result = await session.execute(
                select(Effect.status, func.count()).group_by(Effect.status)
            )
            return dict(result.all())

    async def reclaim_stale(self, older_than_seconds: float) -> int:
        """Revert executing effects whose claim is older than the threshold."""
        cutoff = utc_now() - timedelta(seconds=older_than_seconds)
        async with self._db.session() as session:
            result = await session.execute(
                update(Effect)
                .where(Effect.status == "executing")
                .where(Effect.claimed_at < cutoff)
                .values(status="pending", claimed_at=None, updated_at=utc_now())
            )
            await session.commit()
            if result.rowcount > 0:
                logger.warning("Reclaimed %d stale effect(s)", result.rowcount)
            return result.rowcount

    @staticmethod
    def _to_record(effect: EffectInput, status: str) -> Effect:
        return Effect(
            session_key=effect.session_key,
            checkpoint_id=effect.checkpoint_id,
            type=effect.type,
            payload=effect.payload,
            dedupe_key=effect.dedupe_key,
            status=status,
            autonomous=effect.autonomous,
            attempt_count=0,
        )

    @staticmethod
    def _to_detail(record: Effect) -> EffectDetail:
        return EffectDetail(
            id=record.id,
            session_key=record.session_key,
            checkpoint_id=record.checkpoint_id,
            type=record.type,
            payload=record.payload,
            dedupe_key=record.dedupe_key,
            status=record.status,
            attempt_count=record.attempt_count,
            autonomous=record.autonomous,
            created_at=ensure_utc(record.created_at),
            updated_at=ensure_utc(record.updated_at),
            last_attempt_at=ensure_utc(record.last_attempt_at),
        )

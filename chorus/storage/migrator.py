"""Schema bootstrap -- creates any missing tables on startup.

Tables are derived from the ORM metadata, so the same call works on
Postgres and on the SQLite databases used in tests and local dev.
Existing tables are left untouched.
"""

from __future__ import annotations

import logging

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine

from chorus.storage.models import Base

logger = logging.getLogger(__name__)


async def run_migrations(engine: AsyncEngine) -> list[str]:
    """Create missing tables and return the list of newly created names."""
    async with engine.begin() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        pending = [name for name in Base.metadata.tables if name not in existing]
        if not pending:
            logger.debug("All tables up to date")
            return []

        logger.info("Creating tables: %s", pending)
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Schema bootstrap applied: %s", pending)
    return pending

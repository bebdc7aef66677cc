"""Durable record of every price the service has resolved from upstream."""
from __future__ import annotations

import asyncio
import logging
import time

from sqlalchemy import Engine, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import sessionmaker

from app.data.database import session_scope
from app.data.models import PricePoint
from app.data.types import PriceQuery, ResolvedPrice

logger = logging.getLogger(__name__)


class PricePointStore:
    """INSERT OR IGNORE writer / point reader over the ``price_point`` table.

    SQLite calls are synchronous; the async wrappers push them onto a worker
    thread so the event loop never blocks on disk I/O.
    """

    def __init__(self, engine: Engine) -> None:
        self._sessions = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    async def save(self, query: PriceQuery, resolved: ResolvedPrice) -> bool:
        """Persist *resolved* for *query*; returns False if the row already existed."""
        return await asyncio.to_thread(self._save_sync, query, resolved)

    async def get(self, query: PriceQuery) -> PricePoint | None:
        return await asyncio.to_thread(self._get_sync, query)

    async def count(self, token: str, network: str) -> int:
        return await asyncio.to_thread(self._count_sync, token, network)

    # ── Sync implementations ──────────────────────────────────────────────────

    def _save_sync(self, query: PriceQuery, resolved: ResolvedPrice) -> bool:
        stmt = (
            sqlite_insert(PricePoint)
            .values(
                token=query.token,
                network=query.network.value,
                timestamp=query.timestamp,
                price=str(resolved.price),
                source=resolved.source.value,
                fetched_at=int(time.time()),
            )
            .on_conflict_do_nothing()
        )
        with session_scope(self._sessions) as session:
            inserted = session.execute(stmt).rowcount
        logger.debug(
            "Stored price %s/%s @ %d (%s)",
            query.token, query.network.value, query.timestamp,
            "new" if inserted else "duplicate",
        )
        return bool(inserted)

    def _get_sync(self, query: PriceQuery) -> PricePoint | None:
        with session_scope(self._sessions) as session:
            row = session.execute(
                select(PricePoint)
                .where(PricePoint.token     == query.token)
                .where(PricePoint.network   == query.network.value)
                .where(PricePoint.timestamp == query.timestamp)
            ).scalar_one_or_none()
            if row is not None:
                session.expunge(row)
            return row

    def _count_sync(self, token: str, network: str) -> int:
        with session_scope(self._sessions) as session:
            return session.execute(
                select(func.count())
                .select_from(PricePoint)
                .where(PricePoint.token   == token)
                .where(PricePoint.network == network)
            ).scalar_one()

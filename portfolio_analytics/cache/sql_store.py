"""PostgreSQL-backed cache entry store.

Each artifact kind has its own table (see ``database.orm.CacheEntryMixin``).
The conditional ``UPDATE ... WHERE <claimable>`` in :meth:`claim` is the
serialization point: at most one caller sees a row come back.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from portfolio_analytics.core.logging import get_logger
from portfolio_analytics.database.connection import get_session
from portfolio_analytics.database.orm import (
    CorrelationCache,
    NarrativeCache,
    NewsCache,
    PortfolioRiskCache,
    RegimeForecastCache,
    RiskCache,
    SentimentCache,
    VolatilityForecastCache,
)

from .entries import ArtifactKind, CacheEntry, CacheKey, CacheStatus
from .store import CacheEntryStore


logger = get_logger("cache.sql_store")

CACHE_TABLES = {
    ArtifactKind.RISK: RiskCache,
    ArtifactKind.PORTFOLIO_RISK: PortfolioRiskCache,
    ArtifactKind.CORRELATIONS: CorrelationCache,
    ArtifactKind.VOLATILITY_FORECAST: VolatilityForecastCache,
    ArtifactKind.REGIME_FORECAST: RegimeForecastCache,
    ArtifactKind.NARRATIVE: NarrativeCache,
    ArtifactKind.NEWS: NewsCache,
    ArtifactKind.SENTIMENT: SentimentCache,
}


def _to_entry(key: CacheKey, row: Any) -> CacheEntry:
    return CacheEntry(
        key=key,
        status=CacheStatus(row.status),
        payload=row.payload,
        generated_at=row.generated_at,
        expires_at=row.expires_at,
        retry_count=row.retry_count or 0,
        last_error=row.last_error,
        error_code=row.error_code,
        last_attempt_at=row.last_attempt_at,
        retry_at=row.retry_at,
        lease_token=row.lease_token,
        lease_expires_at=row.lease_expires_at,
    )


def claimable_clause(table: Any, now: datetime):
    """SQL form of :meth:`CacheEntry.claimable` over a cache table's columns."""
    return or_(
        table.status == CacheStatus.STALE.value,
        and_(
            table.status == CacheStatus.FRESH.value,
            or_(table.expires_at.is_(None), table.expires_at <= now),
        ),
        and_(
            table.status == CacheStatus.CALCULATING.value,
            or_(table.lease_expires_at.is_(None), table.lease_expires_at <= now),
        ),
        and_(
            table.status == CacheStatus.ERROR.value,
            or_(table.retry_at.is_(None), table.retry_at <= now),
        ),
    )


def purgeable_clause(table: Any, cutoff: datetime):
    """Entries untouched since ``cutoff``, and leases that lapsed before it."""
    return or_(
        and_(
            table.status != CacheStatus.CALCULATING.value,
            func.coalesce(table.expires_at, table.last_attempt_at, table.updated_at) < cutoff,
        ),
        and_(
            table.status == CacheStatus.CALCULATING.value,
            table.lease_expires_at < cutoff,
        ),
    )


class SqlCacheEntryStore(CacheEntryStore):
    """Cache entries in one table per artifact kind."""

    def __init__(self, session_factory: Callable[[], Any] = get_session):
        self._session = session_factory

    @staticmethod
    def _table(kind: ArtifactKind):
        return CACHE_TABLES[ArtifactKind(kind)]

    def _match(self, table, key: CacheKey):
        return and_(table.subject == key.subject, table.params == key.params_key)

    async def get(self, key: CacheKey) -> CacheEntry | None:
        table = self._table(key.kind)
        async with self._session() as session:
            result = await session.execute(select(table).where(self._match(table, key)))
            row = result.scalar_one_or_none()
            return _to_entry(key, row) if row else None

    async def claim(
        self, key: CacheKey, token: str, now: datetime, lease_expires_at: datetime
    ) -> CacheEntry | None:
        table = self._table(key.kind)
        async with self._session() as session:
            await session.execute(
                insert(table)
                .values(
                    subject=key.subject,
                    params=key.params_key,
                    status=CacheStatus.STALE.value,
                    retry_count=0,
                )
                .on_conflict_do_nothing(index_elements=["subject", "params"])
            )
            result = await session.execute(
                update(table)
                .where(self._match(table, key), claimable_clause(table, now))
                .values(
                    status=CacheStatus.CALCULATING.value,
                    lease_token=token,
                    lease_expires_at=lease_expires_at,
                    last_attempt_at=now,
                    updated_at=now,
                )
                .returning(*table.__table__.c)
                .execution_options(synchronize_session=False)
            )
            row = result.one_or_none()
            await session.commit()
        return _to_entry(key, row) if row else None

    async def _transition(
        self, session: AsyncSession, key: CacheKey, token: str, values: dict[str, Any]
    ) -> bool:
        table = self._table(key.kind)
        result = await session.execute(
            update(table)
            .where(
                self._match(table, key),
                table.status == CacheStatus.CALCULATING.value,
                table.lease_token == token,
            )
            .values(lease_token=None, lease_expires_at=None, updated_at=func.now(), **values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount == 1

    async def complete(
        self,
        key: CacheKey,
        token: str,
        payload: dict[str, Any],
        generated_at: datetime,
        expires_at: datetime,
    ) -> bool:
        async with self._session() as session:
            return await self._transition(
                session,
                key,
                token,
                {
                    "status": CacheStatus.FRESH.value,
                    "payload": payload,
                    "generated_at": generated_at,
                    "expires_at": expires_at,
                    "retry_count": 0,
                    "last_error": None,
                    "error_code": None,
                    "retry_at": None,
                },
            )

    async def fail(
        self,
        key: CacheKey,
        token: str,
        message: str,
        error_code: str,
        retry_at: datetime,
    ) -> bool:
        table = self._table(key.kind)
        async with self._session() as session:
            return await self._transition(
                session,
                key,
                token,
                {
                    "status": CacheStatus.ERROR.value,
                    "retry_count": table.retry_count + 1,
                    "last_error": message,
                    "error_code": error_code,
                    "retry_at": retry_at,
                },
            )

    async def release(self, key: CacheKey, token: str) -> bool:
        async with self._session() as session:
            return await self._transition(
                session, key, token, {"status": CacheStatus.STALE.value}
            )

    async def expire(self, key: CacheKey) -> bool:
        table = self._table(key.kind)
        async with self._session() as session:
            result = await session.execute(
                update(table)
                .where(self._match(table, key), table.status == CacheStatus.FRESH.value)
                .values(status=CacheStatus.STALE.value)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def invalidate(
        self, subject: str, kinds: Iterable[ArtifactKind] | None = None
    ) -> int:
        selected = list(kinds) if kinds is not None else list(CACHE_TABLES)
        total = 0
        async with self._session() as session:
            for kind in selected:
                table = self._table(kind)
                result = await session.execute(
                    update(table)
                    .where(
                        table.subject == str(subject),
                        table.status.in_(
                            [CacheStatus.FRESH.value, CacheStatus.ERROR.value]
                        ),
                    )
                    .values(status=CacheStatus.STALE.value, retry_at=None)
                    .execution_options(synchronize_session=False)
                )
                total += result.rowcount or 0
            await session.commit()
        if total:
            logger.info(f"Invalidated {total} cache entries for {subject}")
        return total

    async def status_counts(self) -> dict[str, dict[str, int]]:
        counts: dict[str, dict[str, int]] = {}
        async with self._session() as session:
            for kind, table in CACHE_TABLES.items():
                result = await session.execute(
                    select(table.status, func.count()).group_by(table.status)
                )
                rows = result.all()
                if rows:
                    counts[kind.value] = {status: count for status, count in rows}
        return counts

    async def purge(self, cutoff: datetime) -> int:
        total = 0
        async with self._session() as session:
            for table in CACHE_TABLES.values():
                result = await session.execute(
                    delete(table)
                    .where(purgeable_clause(table, cutoff))
                    .execution_options(synchronize_session=False)
                )
                total += result.rowcount or 0
            await session.commit()
        if total:
            logger.info(f"Purged {total} cache entries")
        return total

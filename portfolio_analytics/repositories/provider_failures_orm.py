"""Provider failure records repository using SQLAlchemy ORM.

``record_failure`` reads the current row with ``SELECT ... FOR UPDATE`` so
concurrent failures for the same ticker increment the count serially.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert

from portfolio_analytics.database.connection import get_session
from portfolio_analytics.database.orm import TickerFetchFailure
from portfolio_analytics.services.data_providers.failure_tracker import (
    BackoffPolicy,
    FailureStore,
    FailureType,
    ProviderFailureRecord,
    next_record,
)


def _to_record(row: TickerFetchFailure) -> ProviderFailureRecord:
    return ProviderFailureRecord(
        ticker=row.ticker,
        failure_type=FailureType(row.failure_type),
        consecutive_failures=row.consecutive_failures,
        retry_after=row.retry_after,
        last_attempt_at=row.last_attempt_at,
        error_message=row.error_message,
    )


class SqlFailureStore(FailureStore):
    """Failure records in ``ticker_fetch_failures``."""

    async def get(self, ticker: str) -> ProviderFailureRecord | None:
        async with get_session() as session:
            row = await session.get(TickerFetchFailure, ticker)
            return _to_record(row) if row else None

    async def record_failure(
        self,
        ticker: str,
        failure_type: FailureType,
        message: str,
        now: datetime,
        policy: BackoffPolicy,
    ) -> ProviderFailureRecord:
        async with get_session() as session:
            result = await session.execute(
                select(TickerFetchFailure)
                .where(TickerFetchFailure.ticker == ticker)
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            record = next_record(
                _to_record(row) if row else None, ticker, failure_type, message, now, policy
            )
            values = {
                "failure_type": record.failure_type.value,
                "consecutive_failures": record.consecutive_failures,
                "retry_after": record.retry_after,
                "last_attempt_at": record.last_attempt_at,
                "error_message": record.error_message,
            }
            stmt = insert(TickerFetchFailure).values(ticker=ticker, **values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["ticker"],
                set_={**values, "updated_at": now},
            )
            await session.execute(stmt)
            await session.commit()
            return record

    async def delete(self, ticker: str) -> bool:
        async with get_session() as session:
            result = await session.execute(
                delete(TickerFetchFailure).where(TickerFetchFailure.ticker == ticker)
            )
            await session.commit()
            return result.rowcount > 0

    async def delete_expired(self, cutoff: datetime) -> int:
        async with get_session() as session:
            result = await session.execute(
                delete(TickerFetchFailure).where(TickerFetchFailure.retry_after < cutoff)
            )
            await session.commit()
            return result.rowcount or 0

    async def list_active(self, now: datetime) -> list[ProviderFailureRecord]:
        async with get_session() as session:
            result = await session.execute(
                select(TickerFetchFailure)
                .where(TickerFetchFailure.retry_after > now)
                .order_by(TickerFetchFailure.retry_after)
            )
            return [_to_record(row) for row in result.scalars().all()]

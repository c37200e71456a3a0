"""Price history repository using SQLAlchemy ORM.

Usage:
    from portfolio_analytics.repositories import price_history_orm as price_history_repo

    closes = await price_history_repo.get_closes("AAPL", start, end)
    await price_history_repo.upsert_closes("AAPL", series)
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pandas as pd
from sqlalchemy import and_, func, select
from sqlalchemy.dialects.postgresql import insert

from portfolio_analytics.core.exceptions import NoData
from portfolio_analytics.core.logging import get_logger
from portfolio_analytics.database.connection import get_session
from portfolio_analytics.database.orm import PriceHistory

from .stores import TimeSeriesStore


logger = get_logger("repositories.price_history_orm")

UPSERT_CHUNK = 500


async def get_closes(symbol: str, start_date: date, end_date: date) -> pd.Series:
    """Daily closes between two dates (inclusive), indexed by date.

    Raises:
        NoData: the symbol has no stored prices at all
    """
    symbol = symbol.upper()
    async with get_session() as session:
        result = await session.execute(
            select(PriceHistory.date, PriceHistory.close)
            .where(
                and_(
                    PriceHistory.symbol == symbol,
                    PriceHistory.date >= start_date,
                    PriceHistory.date <= end_date,
                )
            )
            .order_by(PriceHistory.date.asc())
        )
        rows = result.all()

        if not rows:
            known = await session.execute(
                select(PriceHistory.id).where(PriceHistory.symbol == symbol).limit(1)
            )
            if known.scalar_one_or_none() is None:
                raise NoData(f"No price history for {symbol}")

    return pd.Series(
        [float(close) for _, close in rows],
        index=pd.DatetimeIndex([d for d, _ in rows]),
        name=symbol,
        dtype=float,
    )


async def get_latest_price_date(symbol: str) -> date | None:
    async with get_session() as session:
        result = await session.execute(
            select(func.max(PriceHistory.date)).where(PriceHistory.symbol == symbol.upper())
        )
        return result.scalar_one_or_none()


async def upsert_closes(symbol: str, closes: pd.Series) -> int:
    """Insert or overwrite closes for a symbol. Returns rows written."""
    symbol = symbol.upper()
    rows = [
        {"symbol": symbol, "date": pd.Timestamp(ts).date(), "close": Decimal(str(round(float(v), 6)))}
        for ts, v in closes.dropna().items()
    ]
    if not rows:
        return 0

    async with get_session() as session:
        for i in range(0, len(rows), UPSERT_CHUNK):
            stmt = insert(PriceHistory).values(rows[i : i + UPSERT_CHUNK])
            stmt = stmt.on_conflict_do_update(
                index_elements=["symbol", "date"],
                set_={"close": stmt.excluded.close},
            )
            await session.execute(stmt)
        await session.commit()

    logger.debug(f"Stored {len(rows)} closes for {symbol}")
    return len(rows)


class SqlTimeSeriesStore(TimeSeriesStore):
    """Time-series store backed by the ``price_history`` table."""

    async def get_closes(self, ticker: str, start: date, end: date) -> pd.Series:
        return await get_closes(ticker, start, end)

    async def latest_date(self, ticker: str) -> date | None:
        return await get_latest_price_date(ticker)

    async def upsert_closes(self, ticker: str, closes: pd.Series) -> int:
        return await upsert_closes(ticker, closes)

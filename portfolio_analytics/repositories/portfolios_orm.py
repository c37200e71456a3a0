"""Portfolio holdings repository - SQLAlchemy ORM async (read-only)."""

from __future__ import annotations

from sqlalchemy import select

from portfolio_analytics.core.exceptions import NoData
from portfolio_analytics.database.connection import get_session
from portfolio_analytics.database.orm import Portfolio, PortfolioHolding

from .stores import Holding, PortfolioStore


async def list_portfolio_ids() -> list[int]:
    """Ids of active portfolios."""
    async with get_session() as session:
        result = await session.execute(
            select(Portfolio.id).where(Portfolio.is_active.is_(True)).order_by(Portfolio.id)
        )
        return list(result.scalars().all())


async def get_holdings(portfolio_id: int) -> list[Holding]:
    async with get_session() as session:
        portfolio = await session.get(Portfolio, portfolio_id)
        if portfolio is None or not portfolio.is_active:
            raise NoData(f"Portfolio {portfolio_id} not found")
        result = await session.execute(
            select(PortfolioHolding)
            .where(PortfolioHolding.portfolio_id == portfolio_id)
            .order_by(PortfolioHolding.symbol)
        )
        return [
            Holding(
                ticker=h.symbol.upper(),
                quantity=float(h.quantity),
                avg_cost=float(h.avg_cost) if h.avg_cost is not None else None,
            )
            for h in result.scalars().all()
        ]


async def held_tickers() -> list[str]:
    """Distinct tickers held by active portfolios."""
    async with get_session() as session:
        result = await session.execute(
            select(PortfolioHolding.symbol)
            .join(Portfolio, Portfolio.id == PortfolioHolding.portfolio_id)
            .where(Portfolio.is_active.is_(True), PortfolioHolding.quantity > 0)
            .distinct()
            .order_by(PortfolioHolding.symbol)
        )
        return [symbol.upper() for symbol in result.scalars().all()]


class SqlPortfolioStore(PortfolioStore):

    async def list_portfolio_ids(self) -> list[int]:
        return await list_portfolio_ids()

    async def get_holdings(self, portfolio_id: int) -> list[Holding]:
        return await get_holdings(portfolio_id)

    async def held_tickers(self) -> list[str]:
        return await held_tickers()

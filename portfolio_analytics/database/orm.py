"""SQLAlchemy ORM models for the analytics engine.

This module defines all database tables using SQLAlchemy 2.0 ORM style.
Uses async support via asyncpg driver.

Usage:
    from portfolio_analytics.database.orm import PriceHistory, TickerFetchFailure
    from portfolio_analytics.database.connection import get_session

    async with get_session() as session:
        failure = await session.get(TickerFetchFailure, "AAPL")
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    declared_attr,
    mapped_column,
    relationship,
)


# Naming convention for constraints and indexes (deterministic names for Alembic)
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all ORM models with naming convention."""
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


# =============================================================================
# MARKET DATA & HOLDINGS (externally owned, read by the engine)
# =============================================================================


class PriceHistory(Base):
    """Daily closes per ticker."""
    __tablename__ = "price_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    close: Mapped[Decimal] = mapped_column(Numeric(16, 6), nullable=False)
    volume: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("symbol", "date", name="uq_price_history"),
        Index("idx_price_history_symbol_date", "symbol", "date"),
    )


class Portfolio(Base):
    """Investment portfolio (managed by the CRUD layer)."""
    __tablename__ = "portfolios"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    base_currency: Mapped[str] = mapped_column(String(10), default="USD")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    holdings: Mapped[list[PortfolioHolding]] = relationship(back_populates="portfolio")

    __table_args__ = (
        Index("idx_portfolios_active", "is_active", postgresql_where=text("is_active = TRUE")),
    )


class PortfolioHolding(Base):
    """Current position of a portfolio in one ticker."""
    __tablename__ = "portfolio_holdings"

    id: Mapped[int] = mapped_column(primary_key=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id", ondelete="CASCADE"), nullable=False)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    avg_cost: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    portfolio: Mapped[Portfolio] = relationship(back_populates="holdings")

    __table_args__ = (
        UniqueConstraint("portfolio_id", "symbol", name="uq_portfolio_holdings_symbol"),
        Index("idx_portfolio_holdings_portfolio", "portfolio_id"),
    )


# =============================================================================
# CACHED ARTIFACTS (one table per artifact kind)
# =============================================================================


class CacheEntryMixin:
    """Columns shared by every artifact cache table.

    A row is keyed by (subject, params) where params is the canonical
    ``name=value`` string of the artifact's parameter tuple.
    """

    subject: Mapped[str] = mapped_column(String(64), primary_key=True)
    params: Mapped[str] = mapped_column(String(255), primary_key=True, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="stale", server_default="stale")
    payload: Mapped[dict | None] = mapped_column(JSONB)
    generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_error: Mapped[str | None] = mapped_column(Text)
    error_code: Mapped[str | None] = mapped_column(String(50))
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    lease_token: Mapped[str | None] = mapped_column(String(64))
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @declared_attr.directive
    def __table_args__(cls):
        return (
            CheckConstraint(
                "status IN ('fresh', 'stale', 'calculating', 'error')", name="status"
            ),
            CheckConstraint(
                "expires_at IS NULL OR generated_at IS NULL OR expires_at >= generated_at",
                name="expiry_order",
            ),
            Index(f"idx_{cls.__tablename__}_status", "status"),
            Index(f"idx_{cls.__tablename__}_expires", "expires_at"),
        )


class RiskCache(CacheEntryMixin, Base):
    """Cached risk metrics per ticker."""
    __tablename__ = "risk_cache"


class PortfolioRiskCache(CacheEntryMixin, Base):
    """Cached risk metrics per portfolio."""
    __tablename__ = "portfolio_risk_cache"


class CorrelationCache(CacheEntryMixin, Base):
    """Cached correlation matrices per portfolio."""
    __tablename__ = "correlation_cache"


class VolatilityForecastCache(CacheEntryMixin, Base):
    """Cached GARCH forecasts per ticker."""
    __tablename__ = "volatility_forecast_cache"


class RegimeForecastCache(CacheEntryMixin, Base):
    """Cached regime forecasts per market."""
    __tablename__ = "regime_forecast_cache"


class NarrativeCache(CacheEntryMixin, Base):
    """Cached narrative text per subject."""
    __tablename__ = "narrative_cache"


class NewsCache(CacheEntryMixin, Base):
    """Cached news digests per subject."""
    __tablename__ = "news_cache"


class SentimentCache(CacheEntryMixin, Base):
    """Cached sentiment blobs per subject."""
    __tablename__ = "sentiment_cache"


# =============================================================================
# PROVIDER FAILURES
# =============================================================================


class TickerFetchFailure(Base):
    """Recent upstream fetch failure for a ticker."""
    __tablename__ = "ticker_fetch_failures"

    ticker: Mapped[str] = mapped_column(String(20), primary_key=True)
    failure_type: Mapped[str] = mapped_column(String(20), nullable=False)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    retry_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "failure_type IN ('not_found', 'rate_limited', 'api_error')", name="failure_type"
        ),
        CheckConstraint("retry_after > last_attempt_at", name="retry_after_order"),
        Index("idx_ticker_fetch_failures_retry_after", "retry_after"),
    )


# =============================================================================
# MODELS & SNAPSHOTS
# =============================================================================


class HmmModelVersion(Base):
    """Trained regime model. Rows are append-only."""
    __tablename__ = "hmm_models"

    id: Mapped[int] = mapped_column(primary_key=True)
    market: Mapped[str] = mapped_column(String(20), nullable=False)
    version: Mapped[str] = mapped_column(String(40), nullable=False)
    trained_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    training_start: Mapped[date] = mapped_column(Date, nullable=False)
    training_end: Mapped[date] = mapped_column(Date, nullable=False)
    state_names: Mapped[list] = mapped_column(JSONB, nullable=False)
    transition_matrix: Mapped[list] = mapped_column(JSONB, nullable=False)
    emission_matrix: Mapped[list] = mapped_column(JSONB, nullable=False)
    initial_distribution: Mapped[list] = mapped_column(JSONB, nullable=False)
    discretization: Mapped[dict] = mapped_column(JSONB, nullable=False)
    accuracy: Mapped[float] = mapped_column(Float, nullable=False)
    validation_log_likelihood: Mapped[float | None] = mapped_column(Float)
    iterations: Mapped[int] = mapped_column(Integer, nullable=False)
    converged: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("market", "version", name="uq_hmm_models_market_version"),
        Index("idx_hmm_models_market_trained", "market", "trained_at"),
    )


class RiskSnapshot(Base):
    """Point-in-time risk metrics. Immutable once written."""
    __tablename__ = "risk_snapshots"

    id: Mapped[int] = mapped_column(primary_key=True)
    subject_type: Mapped[str] = mapped_column(String(20), nullable=False)
    subject: Mapped[str] = mapped_column(String(64), nullable=False)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    volatility: Mapped[float] = mapped_column(Float, nullable=False)
    max_drawdown: Mapped[float] = mapped_column(Float, nullable=False)
    beta: Mapped[float | None] = mapped_column(Float)
    sharpe_ratio: Mapped[float | None] = mapped_column(Float)
    var_95: Mapped[float] = mapped_column(Float, nullable=False)
    var_99: Mapped[float] = mapped_column(Float, nullable=False)
    es_95: Mapped[float] = mapped_column(Float, nullable=False)
    es_99: Mapped[float] = mapped_column(Float, nullable=False)
    risk_score: Mapped[float | None] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("subject_type", "subject", "snapshot_date", name="uq_risk_snapshots_subject_date"),
        CheckConstraint("subject_type IN ('portfolio', 'position')", name="subject_type"),
    )


# =============================================================================
# JOBS
# =============================================================================


class JobConfig(Base):
    """Schedule and limits for a named job."""
    __tablename__ = "job_config"

    job_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    schedule: Mapped[str] = mapped_column(String(100), nullable=False)
    max_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    description: Mapped[str | None] = mapped_column(Text)
    last_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("max_duration_minutes > 0", name="max_duration_positive"),
    )


class JobRun(Base):
    """One execution of a job."""
    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    message: Mapped[str | None] = mapped_column(Text)
    error_message: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'success', 'failed', 'cancelled', 'skipped')", name="status"
        ),
        Index("idx_job_runs_name_started", "job_name", "started_at"),
    )

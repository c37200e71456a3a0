"""
Analytics service - the request-layer entry point.

Every artifact goes through the cache coordinator: fresh values are served
from the cache, everything else is computed at most once per key and
stored. Engines stay pure; this module gathers their inputs from the
time-series and portfolio stores and converts their outputs to the cached
payload schemas.

Usage:
    from portfolio_analytics.services.analytics import get_analytics_service

    service = get_analytics_service()
    result = await service.get_risk("AAPL", days=365)
    result.value.var_95
    result.is_stale
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pandas as pd

from portfolio_analytics.cache.coordinator import CacheCoordinator, CacheResult
from portfolio_analytics.cache.entries import ArtifactKind, CacheKey
from portfolio_analytics.cache.store import MemoryCacheEntryStore
from portfolio_analytics.core.config import Settings, settings
from portfolio_analytics.core.exceptions import (
    InsufficientData,
    NoData,
    UpstreamUnavailable,
    ValidationError,
)
from portfolio_analytics.core.logging import get_logger
from portfolio_analytics.quant_engine.correlation import (
    CorrelationMatrix,
    PositionValue,
    compute_correlation_matrix,
    select_positions,
)
from portfolio_analytics.quant_engine.garch import MAX_HORIZON, VolatilityForecast, forecast_volatility
from portfolio_analytics.quant_engine.hmm import (
    MAX_FORECAST_HORIZON,
    DiscretizationScheme,
    HmmModel,
    RegimeForecast,
    forecast_regime,
    train_hmm,
)
from portfolio_analytics.quant_engine.risk import (
    RiskMetrics,
    compute_risk_metrics,
    portfolio_returns,
)
from portfolio_analytics.repositories.stores import (
    HmmModelStore,
    MemoryHmmModelStore,
    MemoryPortfolioStore,
    MemorySnapshotStore,
    MemoryTimeSeriesStore,
    PortfolioStore,
    RiskSnapshotRecord,
    SnapshotStore,
    TimeSeriesStore,
)
from portfolio_analytics.schemas.analytics import (
    CorrelationMatrixPayload,
    CorrelationPairSchema,
    CorrelationStatsSchema,
    FitDiagnosticsSchema,
    ForecastPointSchema,
    GarchParamsSchema,
    RegimeForecastPayload,
    RiskMetricsPayload,
    VolatilityForecastPayload,
)

from .compute_pool import ComputePool, get_compute_pool
from .data_providers.failure_tracker import (
    MemoryFailureStore,
    ProviderFailureTracker,
)
from .data_providers.price_refresher import PriceRefresher


logger = get_logger("services.analytics")

# Days of returns the forward pass sees before forecasting a regime
REGIME_INFERENCE_DAYS = 365

MIN_RISK_DAYS = 30
MAX_RISK_DAYS = 3650


# =============================================================================
# Payload conversion
# =============================================================================


def _date_of(value) -> date:
    return pd.Timestamp(value).date()


def risk_payload(
    metrics: RiskMetrics,
    returns: pd.Series,
    subject: str,
    subject_type: str,
    benchmark: str | None,
) -> RiskMetricsPayload:
    return RiskMetricsPayload(
        subject=subject,
        subject_type=subject_type,
        start_date=_date_of(returns.index.min()),
        end_date=_date_of(returns.index.max()),
        observations=metrics.observations,
        volatility=metrics.volatility,
        max_drawdown=metrics.max_drawdown,
        beta=metrics.beta,
        beta_unavailable_reason=metrics.beta_unavailable_reason,
        benchmark=benchmark,
        r_squared=metrics.r_squared,
        systematic_volatility=metrics.systematic_volatility,
        idiosyncratic_volatility=metrics.idiosyncratic_volatility,
        sharpe_ratio=metrics.sharpe_ratio,
        sortino_ratio=metrics.sortino_ratio,
        annualized_return=metrics.annualized_return,
        var_95=metrics.var_95,
        var_99=metrics.var_99,
        es_95=metrics.es_95,
        es_99=metrics.es_99,
        risk_score=metrics.risk_score,
        risk_level=metrics.risk_level.value,
    )


def correlation_payload(matrix: CorrelationMatrix, portfolio_id: int | str) -> CorrelationMatrixPayload:
    stats = matrix.stats
    return CorrelationMatrixPayload(
        portfolio_id=str(portfolio_id),
        tickers=list(matrix.tickers),
        pairs=[
            CorrelationPairSchema(
                ticker_a=p.ticker_a,
                ticker_b=p.ticker_b,
                correlation=p.correlation,
                observations=p.observations,
            )
            for p in matrix.pairs
        ],
        start_date=matrix.start_date,
        end_date=matrix.end_date,
        stats=CorrelationStatsSchema(
            average=stats.average,
            minimum=stats.minimum,
            maximum=stats.maximum,
            std_dev=stats.std_dev,
            high_correlation_pairs=stats.high_correlation_pairs,
            diversification_score=stats.diversification_score,
        )
        if stats
        else None,
    )


def volatility_payload(forecast: VolatilityForecast) -> VolatilityForecastPayload:
    fit = forecast.fit
    params = fit.params
    return VolatilityForecastPayload(
        ticker=forecast.ticker,
        horizon=forecast.horizon,
        confidence=forecast.confidence,
        params=GarchParamsSchema(
            omega=params.omega,
            alpha=params.alpha,
            beta=params.beta,
            persistence=params.persistence,
        ),
        stationary=params.stationary,
        high_persistence=params.high_persistence,
        current_volatility=forecast.current_volatility,
        long_run_volatility=forecast.long_run_volatility,
        points=[
            ForecastPointSchema(
                day=p.day,
                variance=p.variance,
                volatility=p.volatility,
                annualized_volatility=p.annualized_volatility,
                lower=p.lower,
                upper=p.upper,
                cumulative_volatility=p.cumulative_volatility,
                cumulative_lower=p.cumulative_lower,
                cumulative_upper=p.cumulative_upper,
            )
            for p in forecast.points
        ],
        warnings=list(forecast.warnings),
        diagnostics=FitDiagnosticsSchema(
            observations=fit.observations,
            iterations=fit.iterations,
            log_likelihood=fit.log_likelihood,
            converged=fit.converged,
            message=fit.message,
        ),
    )


def regime_payload(forecast: RegimeForecast) -> RegimeForecastPayload:
    return RegimeForecastPayload(
        market=forecast.market,
        forecast_date=forecast.forecast_date,
        horizon=forecast.horizon,
        current_regime=forecast.current_regime,
        current_distribution=forecast.current_distribution,
        predicted_regime=forecast.predicted_regime,
        distribution=forecast.distribution,
        transition_probability=forecast.transition_probability,
        confidence=forecast.confidence,
        model_version=forecast.model_version,
        model_accuracy=forecast.model_accuracy,
    )


# =============================================================================
# Service
# =============================================================================


class AnalyticsService:
    """Cache-coordinated access to risk, correlation, volatility and regime analytics."""

    def __init__(
        self,
        coordinator: CacheCoordinator,
        time_series: TimeSeriesStore,
        portfolios: PortfolioStore,
        hmm_models: HmmModelStore,
        snapshots: SnapshotStore,
        refresher: PriceRefresher | None = None,
        compute_pool: ComputePool | None = None,
        clock: Callable[[], datetime] | None = None,
        config: Settings | None = None,
    ):
        self.coordinator = coordinator
        self.time_series = time_series
        self.portfolios = portfolios
        self.hmm_models = hmm_models
        self.snapshots = snapshots
        self.refresher = refresher
        self.compute_pool = compute_pool or get_compute_pool()
        self.config = config or settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def today(self) -> date:
        return self._clock().date()

    def _ttl(self, kind: ArtifactKind) -> timedelta:
        return timedelta(seconds=getattr(self.config, f"cache_ttl_{kind.value}"))

    # -------------------------------------------------------------------------
    # Data access
    # -------------------------------------------------------------------------

    async def _refresh_if_stale(self, ticker: str, start: date, end: date) -> None:
        """Pull missing closes from upstream when stored prices lag behind."""
        if self.refresher is None:
            return
        latest = await self.time_series.latest_date(ticker)
        if latest is not None and (end - latest).days <= self.config.price_staleness_days:
            return
        fetch_start = start if latest is None else max(start, latest + timedelta(days=1))
        try:
            await self.refresher.refresh(ticker, fetch_start, end)
        except UpstreamUnavailable as e:
            if latest is None:
                raise
            logger.warning(f"Using stored prices for {ticker}: {e.message}")

    async def load_returns(self, ticker: str, start: date, end: date) -> pd.Series:
        ticker = ticker.upper()
        await self._refresh_if_stale(ticker, start, end)
        return await self.time_series.get_returns(ticker, start, end)

    async def load_closes(self, ticker: str, start: date, end: date) -> pd.Series:
        ticker = ticker.upper()
        await self._refresh_if_stale(ticker, start, end)
        return await self.time_series.get_closes(ticker, start, end)

    async def _benchmark_returns(self, benchmark: str, start: date, end: date) -> pd.Series | None:
        try:
            return await self.load_returns(benchmark, start, end)
        except (NoData, UpstreamUnavailable) as e:
            logger.warning(f"Benchmark {benchmark} unavailable, beta will be omitted: {e.message}")
            return None

    async def _portfolio_series(
        self, portfolio_id: int, start: date, end: date
    ) -> tuple[dict[str, pd.Series], dict[str, float]]:
        """Returns and market values of a portfolio's priced holdings."""
        holdings = await self.portfolios.get_holdings(portfolio_id)
        returns: dict[str, pd.Series] = {}
        values: dict[str, float] = {}
        for holding in holdings:
            if holding.quantity <= 0:
                continue
            ticker = holding.ticker.upper()
            try:
                closes = await self.load_closes(ticker, start, end)
            except (NoData, UpstreamUnavailable) as e:
                logger.warning(f"Portfolio {portfolio_id}: skipping {ticker}: {e.message}")
                continue
            if closes.empty:
                continue
            price = float(closes.iloc[-1])
            values[ticker] = values.get(ticker, 0.0) + holding.quantity * price
            returns[ticker] = closes.pct_change().dropna()
        return returns, values

    def _window(self, days: int) -> tuple[date, date]:
        end = self.today()
        return end - timedelta(days=days), end

    @staticmethod
    def _check_days(days: int) -> None:
        if not MIN_RISK_DAYS <= days <= MAX_RISK_DAYS:
            raise ValidationError(
                f"days must be between {MIN_RISK_DAYS} and {MAX_RISK_DAYS}",
                details={"days": days},
            )

    # -------------------------------------------------------------------------
    # Risk
    # -------------------------------------------------------------------------

    async def get_risk(
        self,
        subject: str,
        days: int | None = None,
        benchmark: Optional[str] = None,
    ) -> CacheResult[RiskMetricsPayload]:
        """Risk metrics of a single ticker over the last ``days`` calendar days."""
        days = days or self.config.risk_default_days
        self._check_days(days)
        ticker = subject.strip().upper()
        benchmark = (benchmark or self.config.default_benchmark).strip().upper()
        key = CacheKey.build(ArtifactKind.RISK, ticker, days=days, benchmark=benchmark)

        async def compute() -> RiskMetricsPayload:
            start, end = self._window(days)
            returns = await self.load_returns(ticker, start, end)
            bench = await self._benchmark_returns(benchmark, start, end)
            metrics = compute_risk_metrics(
                returns,
                benchmark=bench,
                risk_free_rate=self.config.risk_free_rate,
                min_observations=self.config.risk_min_observations,
            )
            return risk_payload(metrics, returns, ticker, "position", benchmark)

        return await self.coordinator.get_or_compute(key, self._ttl(ArtifactKind.RISK), compute)

    async def get_portfolio_risk(
        self,
        portfolio_id: int,
        days: int | None = None,
        benchmark: Optional[str] = None,
    ) -> CacheResult[RiskMetricsPayload]:
        """Risk metrics of the value-weighted return series of a portfolio."""
        days = days or self.config.risk_default_days
        self._check_days(days)
        benchmark = (benchmark or self.config.default_benchmark).strip().upper()
        key = CacheKey.build(
            ArtifactKind.PORTFOLIO_RISK, portfolio_id, days=days, benchmark=benchmark
        )

        async def compute() -> RiskMetricsPayload:
            start, end = self._window(days)
            returns_by_ticker, values = await self._portfolio_series(portfolio_id, start, end)
            returns = portfolio_returns(returns_by_ticker, values)
            if returns.empty:
                raise InsufficientData(
                    f"Portfolio {portfolio_id} has no priced positions",
                    required=self.config.risk_min_observations,
                    available=0,
                )
            bench = await self._benchmark_returns(benchmark, start, end)
            metrics = compute_risk_metrics(
                returns,
                benchmark=bench,
                risk_free_rate=self.config.risk_free_rate,
                min_observations=self.config.risk_min_observations,
            )
            return risk_payload(metrics, returns, str(portfolio_id), "portfolio", benchmark)

        return await self.coordinator.get_or_compute(
            key, self._ttl(ArtifactKind.PORTFOLIO_RISK), compute
        )

    # -------------------------------------------------------------------------
    # Correlation
    # -------------------------------------------------------------------------

    async def get_correlations(
        self, portfolio_id: int, days: int | None = None
    ) -> CacheResult[CorrelationMatrixPayload]:
        """Pairwise correlations of a portfolio's largest positions."""
        days = days or self.config.risk_default_days
        self._check_days(days)
        key = CacheKey.build(ArtifactKind.CORRELATIONS, portfolio_id, days=days)

        async def compute() -> CorrelationMatrixPayload:
            start, end = self._window(days)
            returns_by_ticker, values = await self._portfolio_series(portfolio_id, start, end)
            tickers = select_positions(
                [PositionValue(ticker, value) for ticker, value in values.items()],
                max_positions=self.config.correlation_max_positions,
                min_weight=self.config.correlation_min_weight,
            )
            matrix = compute_correlation_matrix(
                {ticker: returns_by_ticker[ticker] for ticker in tickers},
                min_overlap=self.config.correlation_min_overlap,
            )
            return correlation_payload(matrix, portfolio_id)

        return await self.coordinator.get_or_compute(
            key, self._ttl(ArtifactKind.CORRELATIONS), compute
        )

    # -------------------------------------------------------------------------
    # Volatility
    # -------------------------------------------------------------------------

    async def get_volatility_forecast(
        self, ticker: str, horizon: int = 30, confidence: float = 0.95
    ) -> CacheResult[VolatilityForecastPayload]:
        """GARCH(1,1) forecast for the next ``horizon`` trading days."""
        if not 1 <= horizon <= MAX_HORIZON:
            raise ValidationError(
                f"horizon must be between 1 and {MAX_HORIZON}", details={"horizon": horizon}
            )
        if not 0 < confidence < 1:
            raise ValidationError(
                "confidence must be between 0 and 1", details={"confidence": confidence}
            )
        ticker = ticker.strip().upper()
        key = CacheKey.build(
            ArtifactKind.VOLATILITY_FORECAST, ticker, horizon=horizon, confidence=confidence
        )

        async def compute() -> VolatilityForecastPayload:
            start, end = self._window(self.config.garch_lookback_days)
            returns = await self.load_returns(ticker, start, end)
            forecast = await self.compute_pool.run(
                forecast_volatility,
                returns,
                ticker,
                horizon,
                confidence,
                min_observations=self.config.garch_min_observations,
                max_iterations=self.config.garch_max_iterations,
            )
            return volatility_payload(forecast)

        return await self.coordinator.get_or_compute(
            key, self._ttl(ArtifactKind.VOLATILITY_FORECAST), compute
        )

    # -------------------------------------------------------------------------
    # Regimes
    # -------------------------------------------------------------------------

    async def get_regime_forecast(
        self, horizon: int = 5, market: Optional[str] = None
    ) -> CacheResult[RegimeForecastPayload]:
        """Regime distribution ``horizon`` days ahead from the latest model version."""
        if not 1 <= horizon <= MAX_FORECAST_HORIZON:
            raise ValidationError(
                f"horizon must be between 1 and {MAX_FORECAST_HORIZON}",
                details={"horizon": horizon},
            )
        market = (market or self.config.hmm_market).strip().upper()
        model = await self.hmm_models.latest(market)
        if model is None:
            raise NoData(f"No trained regime model for {market}")

        key = CacheKey.build(
            ArtifactKind.REGIME_FORECAST, market, horizon=horizon, model=model.version
        )

        async def compute() -> RegimeForecastPayload:
            start, end = self._window(REGIME_INFERENCE_DAYS)
            returns = await self.load_returns(market, start, end)
            forecast = forecast_regime(
                model,
                returns,
                horizon,
                forecast_date=end,
                tolerance=self.config.probability_tolerance,
            )
            return regime_payload(forecast)

        return await self.coordinator.get_or_compute(
            key, self._ttl(ArtifactKind.REGIME_FORECAST), compute
        )

    async def train_regime_model(self, market: Optional[str] = None) -> HmmModel:
        """Train and store a new model version. Earlier versions are left untouched."""
        market = (market or self.config.hmm_market).strip().upper()
        start, end = self._window(self.config.hmm_lookback_years * 365)
        returns = await self.load_returns(market, start, end)
        model = await self.compute_pool.run(
            train_hmm,
            returns,
            market,
            scheme=DiscretizationScheme(volatility_window=self.config.hmm_volatility_window),
            max_iterations=self.config.hmm_max_iterations,
            tolerance=self.config.hmm_tolerance,
            min_observations=self.config.hmm_min_observations,
            trained_at=self._clock(),
            probability_tolerance=self.config.probability_tolerance,
        )
        return await self.hmm_models.save(model)

    # -------------------------------------------------------------------------
    # Snapshots and maintenance
    # -------------------------------------------------------------------------

    async def record_risk_snapshot(
        self, subject_type: str, subject: str | int, days: int | None = None
    ) -> tuple[RiskSnapshotRecord, bool]:
        """Write today's snapshot for a position or portfolio.

        Returns the snapshot and whether it was inserted; an existing row for
        the same subject and date is never overwritten.
        """
        if subject_type == "portfolio":
            result = await self.get_portfolio_risk(int(subject), days)
        elif subject_type == "position":
            result = await self.get_risk(str(subject), days)
        else:
            raise ValidationError(
                "subject_type must be 'portfolio' or 'position'",
                details={"subject_type": subject_type},
            )

        metrics = result.value
        record = RiskSnapshotRecord(
            subject_type=subject_type,
            subject=metrics.subject,
            snapshot_date=self.today(),
            volatility=metrics.volatility,
            max_drawdown=metrics.max_drawdown,
            beta=metrics.beta,
            sharpe_ratio=metrics.sharpe_ratio,
            var_95=metrics.var_95,
            var_99=metrics.var_99,
            es_95=metrics.es_95,
            es_99=metrics.es_99,
            risk_score=metrics.risk_score,
        )
        inserted = await self.snapshots.save(record)
        return record, inserted

    async def invalidate_portfolio(self, portfolio_id: int) -> int:
        """Mark a portfolio's risk and correlation entries stale."""
        count = await self.coordinator.invalidate(
            str(portfolio_id), [ArtifactKind.PORTFOLIO_RISK, ArtifactKind.CORRELATIONS]
        )
        logger.info(f"Invalidated {count} cache entries for portfolio {portfolio_id}")
        return count

    async def cache_health(self) -> dict[str, dict[str, int]]:
        return await self.coordinator.health()


# =============================================================================
# SINGLETON
# =============================================================================

_analytics_service: AnalyticsService | None = None
_failure_tracker: ProviderFailureTracker | None = None


def get_failure_tracker() -> ProviderFailureTracker:
    """Get the process-wide failure tracker for the configured backend."""
    global _failure_tracker
    if _failure_tracker is None:
        if settings.storage_backend == "database":
            from portfolio_analytics.repositories.provider_failures_orm import SqlFailureStore

            _failure_tracker = ProviderFailureTracker(SqlFailureStore())
        else:
            _failure_tracker = ProviderFailureTracker(MemoryFailureStore())
    return _failure_tracker


def build_analytics_service() -> AnalyticsService:
    """Wire the service for the configured storage backend."""
    if settings.storage_backend == "database":
        from portfolio_analytics.cache.sql_store import SqlCacheEntryStore
        from portfolio_analytics.repositories.hmm_models_orm import SqlHmmModelStore
        from portfolio_analytics.repositories.portfolios_orm import SqlPortfolioStore
        from portfolio_analytics.repositories.price_history_orm import SqlTimeSeriesStore
        from portfolio_analytics.repositories.risk_snapshots_orm import SqlSnapshotStore

        from .data_providers.yfinance_fetcher import YFinancePriceFetcher

        time_series = SqlTimeSeriesStore()
        return AnalyticsService(
            coordinator=CacheCoordinator(SqlCacheEntryStore()),
            time_series=time_series,
            portfolios=SqlPortfolioStore(),
            hmm_models=SqlHmmModelStore(),
            snapshots=SqlSnapshotStore(),
            refresher=PriceRefresher(get_failure_tracker(), YFinancePriceFetcher(), time_series),
        )

    # Memory backend: no upstream fetching, stores start empty
    return AnalyticsService(
        coordinator=CacheCoordinator(MemoryCacheEntryStore()),
        time_series=MemoryTimeSeriesStore(),
        portfolios=MemoryPortfolioStore(),
        hmm_models=MemoryHmmModelStore(),
        snapshots=MemorySnapshotStore(),
    )


def get_analytics_service() -> AnalyticsService:
    """Get singleton AnalyticsService instance."""
    global _analytics_service
    if _analytics_service is None:
        _analytics_service = build_analytics_service()
    return _analytics_service


def reset_analytics_service() -> None:
    global _analytics_service, _failure_tracker
    _analytics_service = None
    _failure_tracker = None

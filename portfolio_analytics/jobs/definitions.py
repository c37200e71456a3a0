"""Built-in job definitions for scheduled tasks.

Jobs:
- warm_caches: Portfolio risk and correlations (every hour at :30)
- generate_forecasts: Volatility forecasts for held tickers (4 AM)
- train_hmm_model: New regime model version (Sunday 3 AM)
- generate_regime_forecasts: Regime forecasts for each horizon (5:05 PM)
- create_daily_risk_snapshots: Immutable daily snapshots (5 PM)
- cleanup: Failure records, stale cache rows and old job runs (3 AM)

Every job reports per-item progress on its ``JobContext`` and checks for
cancellation between items. One failing item never aborts the rest.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from portfolio_analytics.core.config import settings
from portfolio_analytics.core.exceptions import AppException
from portfolio_analytics.core.logging import get_logger

from .registry import register_job


if TYPE_CHECKING:
    from .scheduler import JobContext

logger = get_logger("jobs.definitions")


def _service():
    from portfolio_analytics.services.analytics import get_analytics_service

    return get_analytics_service()


# =============================================================================
# CACHE WARMUP
# =============================================================================


@register_job("warm_caches", "0 30 * * * *", max_duration_minutes=20)
async def warm_caches(ctx: JobContext) -> str:
    """Compute portfolio risk and correlations so requests hit a warm cache."""
    service = _service()
    portfolio_ids = await service.portfolios.list_portfolio_ids()

    for portfolio_id in portfolio_ids:
        ctx.check_cancelled()
        try:
            await service.get_portfolio_risk(portfolio_id)
            await service.get_correlations(portfolio_id)
            ctx.succeeded()
        except AppException as e:
            ctx.failed(f"portfolio {portfolio_id}", e)

    return f"Warmed {ctx.items_processed}/{len(portfolio_ids)} portfolios"


# =============================================================================
# FORECASTS
# =============================================================================


@register_job("generate_forecasts", "0 0 4 * * *", max_duration_minutes=45)
async def generate_forecasts(ctx: JobContext) -> str:
    """Fit GARCH volatility forecasts for every held ticker."""
    service = _service()
    tickers = await service.portfolios.held_tickers()

    for ticker in tickers:
        ctx.check_cancelled()
        try:
            await service.get_volatility_forecast(ticker)
            ctx.succeeded()
        except AppException as e:
            ctx.failed(ticker, e)

    return f"Forecast {ctx.items_processed}/{len(tickers)} tickers"


@register_job("train_hmm_model", "0 0 3 * * SUN", max_duration_minutes=60)
async def train_hmm_model(ctx: JobContext) -> str:
    """Train a new regime model version on the market index."""
    service = _service()
    ctx.check_cancelled()
    model = await service.train_regime_model()
    ctx.succeeded()
    return (
        f"Trained {model.market} model {model.version} "
        f"(accuracy={model.accuracy:.3f}, converged={model.converged})"
    )


@register_job("generate_regime_forecasts", "0 5 17 * * *", max_duration_minutes=15)
async def generate_regime_forecasts(ctx: JobContext) -> str:
    """Forecast market regimes for each configured horizon."""
    service = _service()
    horizons = settings.hmm_forecast_horizons

    for horizon in horizons:
        ctx.check_cancelled()
        try:
            await service.get_regime_forecast(horizon)
            ctx.succeeded()
        except AppException as e:
            ctx.failed(f"horizon {horizon}", e)

    return f"Forecast {ctx.items_processed}/{len(horizons)} horizons"


# =============================================================================
# SNAPSHOTS
# =============================================================================


@register_job("create_daily_risk_snapshots", "0 0 17 * * *", max_duration_minutes=30)
async def create_daily_risk_snapshots(ctx: JobContext) -> str:
    """Record today's risk snapshot for every portfolio and held ticker."""
    service = _service()
    subjects: list[tuple[str, str | int]] = [
        ("portfolio", pid) for pid in await service.portfolios.list_portfolio_ids()
    ]
    subjects += [("position", ticker) for ticker in await service.portfolios.held_tickers()]

    inserted = 0
    for subject_type, subject in subjects:
        ctx.check_cancelled()
        try:
            _, created = await service.record_risk_snapshot(subject_type, subject)
            inserted += int(created)
            ctx.succeeded()
        except AppException as e:
            ctx.failed(f"{subject_type} {subject}", e)

    return f"Recorded {inserted} new snapshots ({len(subjects)} subjects)"


# =============================================================================
# CLEANUP
# =============================================================================


@register_job("cleanup", "0 0 3 * * *", max_duration_minutes=30)
async def cleanup(ctx: JobContext) -> str:
    """Sweep expired failure records, old cache rows and old job runs."""
    from portfolio_analytics.services.analytics import get_failure_tracker

    swept = await get_failure_tracker().sweep()
    ctx.succeeded(swept)

    ctx.check_cancelled()
    purged = await _service().coordinator.purge(timedelta(days=settings.cache_purge_after_days))
    ctx.succeeded(purged)

    runs = 0
    if ctx.runs is not None:
        ctx.check_cancelled()
        runs = await ctx.runs.purge(ctx.started_at - timedelta(days=settings.job_run_retention_days))
        ctx.succeeded(runs)

    logger.info(f"Cleanup: {swept} failure records, {purged} cache rows, {runs} job runs")
    return f"Removed {swept} failure records, {purged} cache rows, {runs} job runs"

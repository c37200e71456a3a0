"""
Analytics API routes.

Every response carries the payload plus a ``cache`` block telling the
caller whether the value is fresh or a stale fallback.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query

from portfolio_analytics.api.dependencies import analytics_service
from portfolio_analytics.cache.coordinator import CacheResult
from portfolio_analytics.core.logging import get_logger
from portfolio_analytics.services.analytics import MAX_RISK_DAYS, MIN_RISK_DAYS, AnalyticsService
from portfolio_analytics.schemas.analytics import (
    CacheHealthResponse,
    CacheInfo,
    CorrelationResponse,
    InvalidationResponse,
    RegimeForecastResponse,
    RiskResponse,
    VolatilityForecastResponse,
)


router = APIRouter(prefix="/analytics", tags=["Analytics"])
logger = get_logger("routes.analytics")


def _cache_info(result: CacheResult) -> CacheInfo:
    return CacheInfo(
        status=result.status.value,
        is_stale=result.is_stale,
        generated_at=result.generated_at,
        expires_at=result.expires_at,
        last_error=result.last_error,
    )


# =============================================================================
# Risk
# =============================================================================


@router.get(
    "/risk/{ticker}",
    response_model=RiskResponse,
    summary="Position risk metrics",
)
async def get_position_risk(
    ticker: str = Path(..., min_length=1, max_length=20),
    days: Optional[int] = Query(None, ge=MIN_RISK_DAYS, le=MAX_RISK_DAYS),
    benchmark: Optional[str] = Query(None, min_length=1, max_length=20),
    service: AnalyticsService = Depends(analytics_service),
) -> RiskResponse:
    result = await service.get_risk(ticker, days=days, benchmark=benchmark)
    return RiskResponse(data=result.value, cache=_cache_info(result))


@router.get(
    "/portfolios/{portfolio_id}/risk",
    response_model=RiskResponse,
    summary="Portfolio risk metrics",
)
async def get_portfolio_risk(
    portfolio_id: int = Path(..., ge=1),
    days: Optional[int] = Query(None, ge=MIN_RISK_DAYS, le=MAX_RISK_DAYS),
    benchmark: Optional[str] = Query(None, min_length=1, max_length=20),
    service: AnalyticsService = Depends(analytics_service),
) -> RiskResponse:
    result = await service.get_portfolio_risk(portfolio_id, days=days, benchmark=benchmark)
    return RiskResponse(data=result.value, cache=_cache_info(result))


@router.get(
    "/portfolios/{portfolio_id}/correlations",
    response_model=CorrelationResponse,
    summary="Correlation matrix of the largest positions",
)
async def get_correlations(
    portfolio_id: int = Path(..., ge=1),
    days: Optional[int] = Query(None, ge=MIN_RISK_DAYS, le=MAX_RISK_DAYS),
    service: AnalyticsService = Depends(analytics_service),
) -> CorrelationResponse:
    result = await service.get_correlations(portfolio_id, days=days)
    return CorrelationResponse(data=result.value, cache=_cache_info(result))


@router.post(
    "/portfolios/{portfolio_id}/invalidate",
    response_model=InvalidationResponse,
    summary="Mark a portfolio's cached analytics stale",
    description="Call after holdings change. Stale values are still served until recomputed.",
)
async def invalidate_portfolio(
    portfolio_id: int = Path(..., ge=1),
    service: AnalyticsService = Depends(analytics_service),
) -> InvalidationResponse:
    count = await service.invalidate_portfolio(portfolio_id)
    return InvalidationResponse(subject=str(portfolio_id), invalidated=count)


# =============================================================================
# Forecasts
# =============================================================================


@router.get(
    "/volatility/{ticker}",
    response_model=VolatilityForecastResponse,
    summary="GARCH(1,1) volatility forecast",
)
async def get_volatility_forecast(
    ticker: str = Path(..., min_length=1, max_length=20),
    horizon: int = Query(30, ge=1, le=90),
    confidence: float = Query(0.95, gt=0, lt=1),
    service: AnalyticsService = Depends(analytics_service),
) -> VolatilityForecastResponse:
    result = await service.get_volatility_forecast(ticker, horizon=horizon, confidence=confidence)
    return VolatilityForecastResponse(data=result.value, cache=_cache_info(result))


@router.get(
    "/regime",
    response_model=RegimeForecastResponse,
    summary="Market regime forecast",
)
async def get_regime_forecast(
    horizon: int = Query(5, ge=1, le=30),
    market: Optional[str] = Query(None, min_length=1, max_length=20),
    service: AnalyticsService = Depends(analytics_service),
) -> RegimeForecastResponse:
    result = await service.get_regime_forecast(horizon=horizon, market=market)
    return RegimeForecastResponse(data=result.value, cache=_cache_info(result))


# =============================================================================
# Cache
# =============================================================================


@router.get(
    "/cache/health",
    response_model=CacheHealthResponse,
    summary="Cache entry counts per artifact kind and status",
)
async def get_cache_health(
    service: AnalyticsService = Depends(analytics_service),
) -> CacheHealthResponse:
    kinds = await service.cache_health()
    total = sum(sum(counts.values()) for counts in kinds.values())
    return CacheHealthResponse(kinds=kinds, total=total)

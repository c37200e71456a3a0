"""Analytics artifact schemas.

These models are both the cached payloads (validated again on every read)
and the API response bodies.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from portfolio_analytics.core.config import settings


def _check_distribution(values: dict[str, float], label: str) -> dict[str, float]:
    tolerance = settings.probability_tolerance
    if not values:
        raise ValueError(f"{label} is empty")
    if any(not math.isfinite(p) or p < 0 for p in values.values()):
        raise ValueError(f"{label} has negative or non-finite probabilities")
    total = sum(values.values())
    if abs(total - 1.0) > tolerance:
        raise ValueError(f"{label} sums to {total:.4f}, outside 1 ± {tolerance}")
    return values


# =============================================================================
# Risk
# =============================================================================


class RiskMetricsPayload(BaseModel):
    """Risk metrics for a ticker or a portfolio."""

    subject: str = Field(..., description="Ticker or portfolio id")
    subject_type: Literal["position", "portfolio"] = Field(..., description="Kind of subject")
    start_date: date
    end_date: date
    observations: int = Field(..., ge=1)
    volatility: float = Field(..., ge=0, description="Annualized volatility of log returns, %")
    max_drawdown: float = Field(..., le=0, description="Largest peak-to-trough decline, %")
    beta: float | None = Field(None, description="Beta against the benchmark, absent when undefined")
    beta_unavailable_reason: str | None = None
    benchmark: str | None = None
    r_squared: float | None = Field(None, ge=0, le=1)
    systematic_volatility: float | None = Field(None, ge=0)
    idiosyncratic_volatility: float | None = Field(None, ge=0)
    sharpe_ratio: float | None = None
    sortino_ratio: float | None = None
    annualized_return: float = Field(..., description="Mean daily return x 252, %")
    var_95: float = Field(..., description="Historical 95% VaR, daily %")
    var_99: float = Field(..., description="Historical 99% VaR, daily %")
    es_95: float = Field(..., description="95% Expected Shortfall, daily %")
    es_99: float = Field(..., description="99% Expected Shortfall, daily %")
    risk_score: float = Field(..., ge=0, le=100)
    risk_level: Literal["low", "moderate", "high"]

    @model_validator(mode="after")
    def check_tail_order(self) -> RiskMetricsPayload:
        if self.es_95 > self.var_95 + 1e-9 or self.es_99 > self.var_99 + 1e-9:
            raise ValueError("Expected shortfall cannot be milder than VaR")
        if self.end_date < self.start_date:
            raise ValueError("end_date precedes start_date")
        return self


# =============================================================================
# Correlation
# =============================================================================


class CorrelationPairSchema(BaseModel):
    """One upper-triangular coefficient."""

    ticker_a: str
    ticker_b: str
    correlation: float = Field(..., ge=-1, le=1)
    observations: int = Field(..., ge=2)


class CorrelationStatsSchema(BaseModel):
    """Summary of the coefficients."""

    average: float = Field(..., ge=-1, le=1)
    minimum: float = Field(..., ge=-1, le=1)
    maximum: float = Field(..., ge=-1, le=1)
    std_dev: float = Field(..., ge=0)
    high_correlation_pairs: int = Field(..., ge=0)
    diversification_score: float = Field(..., ge=0, le=10)


class CorrelationMatrixPayload(BaseModel):
    """Sorted tickers and sparse pairs; a missing pair means insufficient overlap."""

    portfolio_id: str
    tickers: list[str]
    pairs: list[CorrelationPairSchema] = Field(default_factory=list)
    start_date: date | None = None
    end_date: date | None = None
    stats: CorrelationStatsSchema | None = None

    @model_validator(mode="after")
    def check_upper_triangle(self) -> CorrelationMatrixPayload:
        position = {ticker: i for i, ticker in enumerate(self.tickers)}
        if len(position) != len(self.tickers):
            raise ValueError("Duplicate tickers in correlation matrix")
        seen = set()
        for pair in self.pairs:
            a = position.get(pair.ticker_a)
            b = position.get(pair.ticker_b)
            if a is None or b is None:
                raise ValueError(f"Pair {pair.ticker_a}/{pair.ticker_b} references unknown ticker")
            if a >= b:
                raise ValueError(f"Pair {pair.ticker_a}/{pair.ticker_b} is not upper-triangular")
            if (a, b) in seen:
                raise ValueError(f"Duplicate pair {pair.ticker_a}/{pair.ticker_b}")
            seen.add((a, b))
        return self


# =============================================================================
# Volatility forecast
# =============================================================================


class GarchParamsSchema(BaseModel):
    """Fitted GARCH(1,1) parameters on percentage returns."""

    omega: float = Field(..., ge=0)
    alpha: float = Field(..., ge=0)
    beta: float = Field(..., ge=0)
    persistence: float = Field(..., ge=0)

    @model_validator(mode="after")
    def check_persistence(self) -> GarchParamsSchema:
        if abs(self.persistence - (self.alpha + self.beta)) > 1e-9:
            raise ValueError("persistence must equal alpha + beta")
        return self


class ForecastPointSchema(BaseModel):
    """Forecast for one day ahead. Bands are daily and cumulative returns, %."""

    day: int = Field(..., ge=1)
    variance: float = Field(..., ge=0)
    volatility: float = Field(..., ge=0)
    annualized_volatility: float = Field(..., ge=0)
    lower: float
    upper: float
    cumulative_volatility: float = Field(..., ge=0)
    cumulative_lower: float
    cumulative_upper: float


class FitDiagnosticsSchema(BaseModel):
    """Optimizer diagnostics."""

    observations: int
    iterations: int
    log_likelihood: float
    converged: bool
    message: str


class VolatilityForecastPayload(BaseModel):
    """GARCH(1,1) forecast with normal confidence bands."""

    ticker: str
    horizon: int = Field(..., ge=1, le=90)
    confidence: float = Field(..., gt=0, lt=1)
    interval_distribution: Literal["normal"] = "normal"
    params: GarchParamsSchema
    stationary: bool
    high_persistence: bool
    current_volatility: float | None = Field(None, description="Realized 30-day volatility, annualized %")
    long_run_volatility: float | None = Field(None, description="Unconditional volatility, annualized %")
    points: list[ForecastPointSchema]
    warnings: list[str] = Field(default_factory=list)
    diagnostics: FitDiagnosticsSchema

    @model_validator(mode="after")
    def check_points(self) -> VolatilityForecastPayload:
        if len(self.points) != self.horizon:
            raise ValueError("Forecast must contain one point per horizon day")
        if [p.day for p in self.points] != list(range(1, self.horizon + 1)):
            raise ValueError("Forecast points must cover days 1..horizon in order")
        if self.stationary != (self.params.persistence < 1):
            raise ValueError("stationary flag disagrees with persistence")
        return self


# =============================================================================
# Regime forecast
# =============================================================================


class RegimeForecastPayload(BaseModel):
    """Regime probabilities now and at the forecast horizon."""

    market: str
    forecast_date: date
    horizon: int = Field(..., ge=1, le=30)
    current_regime: str
    current_distribution: dict[str, float]
    predicted_regime: str
    distribution: dict[str, float]
    transition_probability: float = Field(..., ge=0, le=1)
    confidence: Literal["high", "medium", "low"]
    model_version: str | None = None
    model_accuracy: float = Field(..., ge=0, le=1)

    @field_validator("current_distribution")
    @classmethod
    def check_current(cls, v: dict[str, float]) -> dict[str, float]:
        return _check_distribution(v, "current_distribution")

    @field_validator("distribution")
    @classmethod
    def check_forecast(cls, v: dict[str, float]) -> dict[str, float]:
        return _check_distribution(v, "distribution")

    @model_validator(mode="after")
    def check_labels(self) -> RegimeForecastPayload:
        if self.predicted_regime not in self.distribution:
            raise ValueError("predicted_regime is not a state of the distribution")
        if self.current_regime not in self.current_distribution:
            raise ValueError("current_regime is not a state of the distribution")
        return self


# =============================================================================
# Text artifacts
# =============================================================================


class TextArtifactPayload(BaseModel):
    """Narrative, news digest or sentiment blob for a subject."""

    subject: str
    content: str
    source: str | None = None
    sentiment_score: float | None = Field(None, ge=-1, le=1)
    published_at: datetime | None = None


# =============================================================================
# Responses
# =============================================================================


class CacheInfo(BaseModel):
    """Freshness of the returned value."""

    status: Literal["fresh", "stale", "calculating", "error"]
    is_stale: bool = Field(..., description="True when a newer value could not be produced")
    generated_at: datetime | None = None
    expires_at: datetime | None = None
    last_error: str | None = None


class RiskResponse(BaseModel):
    data: RiskMetricsPayload
    cache: CacheInfo


class CorrelationResponse(BaseModel):
    data: CorrelationMatrixPayload
    cache: CacheInfo


class VolatilityForecastResponse(BaseModel):
    data: VolatilityForecastPayload
    cache: CacheInfo


class RegimeForecastResponse(BaseModel):
    data: RegimeForecastPayload
    cache: CacheInfo


class CacheHealthResponse(BaseModel):
    """Entry counts per artifact kind and status."""

    kinds: dict[str, dict[str, int]] = Field(default_factory=dict)
    total: int = 0


class InvalidationResponse(BaseModel):
    subject: str
    invalidated: int

"""
Risk metrics from daily return series.

Conventions
-----------
- Inputs are simple daily returns indexed by date.
- Volatility is the annualized standard deviation of log returns, in percent.
- VaR and Expected Shortfall use historical simulation and are reported as
  negative percentages (a loss of 3.2% is -3.2).
- Max drawdown is the largest peak-to-trough decline, reported as a
  negative percentage.
- Beta is None whenever it cannot be estimated; the reason is reported
  alongside.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Mapping

import numpy as np
import pandas as pd

from portfolio_analytics.core.exceptions import InsufficientData


logger = logging.getLogger(__name__)

TRADING_DAYS = 252
MIN_OBSERVATIONS = 20
DEGENERATE_VARIANCE = 1e-14


class RiskLevel(str, Enum):
    """Coarse risk bucket derived from the risk score."""
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"


@dataclass(frozen=True)
class BetaEstimate:
    """Beta and R² against a benchmark, or the reason they are missing."""
    beta: float | None
    r_squared: float | None
    observations: int
    unavailable_reason: str | None = None


@dataclass(frozen=True)
class RiskMetrics:
    """Risk metrics for one return series."""
    observations: int
    volatility: float
    max_drawdown: float
    sharpe_ratio: float | None
    sortino_ratio: float | None
    annualized_return: float
    var_95: float
    var_99: float
    es_95: float
    es_99: float
    beta: float | None
    beta_unavailable_reason: str | None
    r_squared: float | None
    systematic_volatility: float | None
    idiosyncratic_volatility: float | None
    risk_score: float
    risk_level: RiskLevel


def clean_returns(returns: pd.Series) -> pd.Series:
    """Drop missing and non-finite observations, sort by date."""
    series = pd.Series(returns, dtype=float)
    series = series[np.isfinite(series.to_numpy())]
    return series.sort_index()


def annualized_volatility(returns: pd.Series | np.ndarray) -> float:
    """Annualized standard deviation of log returns, in percent."""
    log_returns = np.log1p(np.asarray(returns, dtype=float))
    if len(log_returns) < 2:
        return 0.0
    return float(np.std(log_returns, ddof=1) * np.sqrt(TRADING_DAYS) * 100)


def max_drawdown(returns: pd.Series | np.ndarray) -> float:
    """Largest peak-to-trough decline of the compounded series, in percent (<= 0)."""
    values = np.asarray(returns, dtype=float)
    wealth = np.concatenate([[1.0], np.cumprod(1.0 + values)])
    peaks = np.maximum.accumulate(wealth)
    drawdowns = wealth / peaks - 1.0
    return float(drawdowns.min() * 100)


def historical_var_es(
    returns: pd.Series | np.ndarray, confidence: float
) -> tuple[float, float]:
    """
    Historical-simulation VaR and Expected Shortfall.

    Parameters
    ----------
    returns : array-like
        Daily simple returns.
    confidence : float
        Confidence level in (0, 1), e.g. 0.95.

    Returns
    -------
    tuple[float, float]
        (VaR, ES) in percent. VaR is the (1 - c) empirical quantile taken at
        index ``floor(n * (1 - c))`` of the sorted returns; ES is the mean of
        all returns at or below that threshold.
    """
    if not 0 < confidence < 1:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")

    ordered = np.sort(np.asarray(returns, dtype=float))
    n = len(ordered)
    if n == 0:
        raise InsufficientData("No returns for VaR", required=1, available=0)

    index = int(np.floor(round(n * (1 - confidence), 10)))
    index = min(max(index, 0), n - 1)
    threshold = ordered[index]
    tail = ordered[ordered <= threshold]
    return float(threshold * 100), float(tail.mean() * 100)


def estimate_beta(
    returns: pd.Series,
    benchmark: pd.Series | None,
    min_observations: int = MIN_OBSERVATIONS,
) -> BetaEstimate:
    """Beta of ``returns`` against ``benchmark`` over their common dates."""
    if benchmark is None:
        return BetaEstimate(None, None, 0, "benchmark not provided")

    aligned = pd.concat(
        [returns.rename("asset"), clean_returns(benchmark).rename("benchmark")],
        axis=1,
        join="inner",
    ).dropna()
    n = len(aligned)
    if n < min_observations:
        return BetaEstimate(
            None, None, n, f"only {n} overlapping observations with benchmark"
        )

    asset = aligned["asset"].to_numpy()
    bench = aligned["benchmark"].to_numpy()
    bench_var = float(np.var(bench, ddof=1))
    if bench_var < DEGENERATE_VARIANCE:
        return BetaEstimate(None, None, n, "benchmark variance is zero")

    covariance = float(np.cov(asset, bench, ddof=1)[0, 1])
    beta = covariance / bench_var

    asset_var = float(np.var(asset, ddof=1))
    if asset_var < DEGENERATE_VARIANCE:
        r_squared = None
    else:
        r_squared = float(np.clip(covariance**2 / (asset_var * bench_var), 0.0, 1.0))
    return BetaEstimate(float(beta), r_squared, n)


def score_risk(
    volatility: float,
    drawdown: float,
    beta: float | None,
    var_95: float,
) -> tuple[float, RiskLevel]:
    """
    Blend metrics into a 0-100 risk score.

    Weights: volatility 40% (saturating at 50%), drawdown 30% (at 50%),
    |beta| 20% (at 2.0), |VaR95| 10% (at 10%). When beta is unavailable its
    weight is redistributed over the other components.
    """
    components = [
        (0.4, min(volatility / 50.0, 1.0)),
        (0.3, min(abs(drawdown) / 50.0, 1.0)),
        (0.1, min(abs(var_95) / 10.0, 1.0)),
    ]
    if beta is not None:
        components.append((0.2, min(abs(beta) / 2.0, 1.0)))

    total_weight = sum(weight for weight, _ in components)
    score = 100.0 * sum(weight * value for weight, value in components) / total_weight

    if score < 40:
        level = RiskLevel.LOW
    elif score < 70:
        level = RiskLevel.MODERATE
    else:
        level = RiskLevel.HIGH
    return round(score, 2), level


def compute_risk_metrics(
    returns: pd.Series,
    benchmark: pd.Series | None = None,
    risk_free_rate: float = 0.0,
    min_observations: int = MIN_OBSERVATIONS,
) -> RiskMetrics:
    """
    Compute the full risk profile of a return series.

    Parameters
    ----------
    returns : pd.Series
        Daily simple returns indexed by date.
    benchmark : pd.Series, optional
        Benchmark daily returns for beta. Aligned by date intersection.
    risk_free_rate : float
        Annual risk-free rate as a decimal.
    min_observations : int
        Minimum number of returns required.

    Returns
    -------
    RiskMetrics

    Raises
    ------
    InsufficientData
        If fewer than ``min_observations`` returns are available.
    """
    series = clean_returns(returns)
    n = len(series)
    if n < min_observations:
        raise InsufficientData(
            f"Need at least {min_observations} returns, got {n}",
            required=min_observations,
            available=n,
        )

    values = series.to_numpy()
    volatility = annualized_volatility(values)
    drawdown = max_drawdown(values)

    daily_rf = risk_free_rate / TRADING_DAYS
    excess = values - daily_rf
    std = float(np.std(values, ddof=1))
    sharpe = (
        float(excess.mean() / std * np.sqrt(TRADING_DAYS))
        if std > np.sqrt(DEGENERATE_VARIANCE)
        else None
    )

    downside_dev = float(np.sqrt(np.mean(np.minimum(excess, 0.0) ** 2)))
    sortino = (
        float(excess.mean() / downside_dev * np.sqrt(TRADING_DAYS))
        if downside_dev > 0
        else None
    )

    var_95, es_95 = historical_var_es(values, 0.95)
    var_99, es_99 = historical_var_es(values, 0.99)

    beta = estimate_beta(series, benchmark, min_observations=min_observations)
    if beta.r_squared is not None:
        systematic = float(np.sqrt(beta.r_squared) * volatility)
        idiosyncratic = float(np.sqrt(1.0 - beta.r_squared) * volatility)
    else:
        systematic = idiosyncratic = None

    score, level = score_risk(volatility, drawdown, beta.beta, var_95)

    logger.debug(
        f"Risk metrics over {n} obs: vol={volatility:.2f}% mdd={drawdown:.2f}% "
        f"beta={beta.beta}"
    )

    return RiskMetrics(
        observations=n,
        volatility=volatility,
        max_drawdown=drawdown,
        sharpe_ratio=sharpe,
        sortino_ratio=sortino,
        annualized_return=float(values.mean() * TRADING_DAYS * 100),
        var_95=var_95,
        var_99=var_99,
        es_95=es_95,
        es_99=es_99,
        beta=beta.beta,
        beta_unavailable_reason=beta.unavailable_reason,
        r_squared=beta.r_squared,
        systematic_volatility=systematic,
        idiosyncratic_volatility=idiosyncratic,
        risk_score=score,
        risk_level=level,
    )


def portfolio_returns(
    returns_by_ticker: Mapping[str, pd.Series],
    weights: Mapping[str, float],
) -> pd.Series:
    """
    Value-weighted daily returns of a portfolio.

    Only tickers with a positive weight and a return series are used; weights
    are renormalized over them and the series are aligned on common dates.
    """
    usable = {
        ticker: clean_returns(series)
        for ticker, series in returns_by_ticker.items()
        if weights.get(ticker, 0) > 0 and series is not None and len(series) > 0
    }
    if not usable:
        return pd.Series(dtype=float)

    frame = pd.concat(usable, axis=1, join="inner").dropna()
    w = np.array([weights[ticker] for ticker in frame.columns], dtype=float)
    w = w / w.sum()
    return pd.Series(frame.to_numpy() @ w, index=frame.index, name="portfolio")

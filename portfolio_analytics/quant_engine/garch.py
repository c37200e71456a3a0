"""
GARCH(1,1) volatility model.

    σ²_t = ω + α·ε²_{t-1} + β·σ²_{t-1}

Parameters are estimated with the ``arch`` package by Gaussian maximum
likelihood on percentage returns with a constant mean, under a bounded
iteration budget. Forecast intervals assume normally distributed returns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from arch import arch_model
from scipy.stats import norm

from portfolio_analytics.core.exceptions import ConvergenceFailure, InsufficientData

from .risk import TRADING_DAYS, clean_returns


logger = logging.getLogger(__name__)

MIN_OBSERVATIONS = 250
MAX_ITERATIONS = 200
MAX_HORIZON = 90
HIGH_PERSISTENCE = 0.95
HIGH_ALPHA = 0.15
ELEVATED_VOL_RATIO = 1.5
REALIZED_WINDOW = 30


@dataclass(frozen=True)
class GarchParams:
    """Fitted (ω, α, β) on percentage returns."""
    omega: float
    alpha: float
    beta: float

    def __post_init__(self):
        if self.omega < 0 or self.alpha < 0 or self.beta < 0:
            raise ValueError(
                f"GARCH parameters must be non-negative: "
                f"omega={self.omega}, alpha={self.alpha}, beta={self.beta}"
            )

    @property
    def persistence(self) -> float:
        return self.alpha + self.beta

    @property
    def stationary(self) -> bool:
        return self.persistence < 1.0

    @property
    def high_persistence(self) -> bool:
        return round(self.persistence, 10) >= HIGH_PERSISTENCE

    @property
    def long_run_variance(self) -> float | None:
        """Unconditional daily variance, undefined for non-stationary fits."""
        if not self.stationary:
            return None
        return self.omega / (1.0 - self.persistence)


@dataclass(frozen=True)
class GarchFit:
    """Estimated model plus optimizer diagnostics."""
    params: GarchParams
    mean: float
    observations: int
    log_likelihood: float
    iterations: int
    converged: bool
    message: str
    last_variance: float
    next_variance: float


@dataclass(frozen=True)
class ForecastPoint:
    """Forecast for one day ahead. Volatilities and bands are in percent."""
    day: int
    variance: float
    volatility: float
    annualized_volatility: float
    lower: float
    upper: float
    cumulative_volatility: float
    cumulative_lower: float
    cumulative_upper: float


@dataclass(frozen=True)
class VolatilityForecast:
    """Multi-horizon forecast from a GARCH(1,1) fit."""
    ticker: str
    horizon: int
    confidence: float
    fit: GarchFit
    points: tuple[ForecastPoint, ...]
    current_volatility: float | None
    long_run_volatility: float | None
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def persistence(self) -> float:
        return self.fit.params.persistence


def fit_garch(
    returns: pd.Series | np.ndarray,
    min_observations: int = MIN_OBSERVATIONS,
    max_iterations: int = MAX_ITERATIONS,
) -> GarchFit:
    """
    Fit GARCH(1,1) with a constant mean by maximum likelihood.

    Parameters
    ----------
    returns : array-like
        Daily simple returns (decimals).
    min_observations : int
        Minimum number of returns for a stable estimate.
    max_iterations : int
        Iteration budget for the optimizer.

    Returns
    -------
    GarchFit

    Raises
    ------
    InsufficientData
        If fewer than ``min_observations`` returns are available.
    ConvergenceFailure
        If the optimizer stops without converging.
    """
    if isinstance(returns, pd.Series):
        values = clean_returns(returns).to_numpy()
    else:
        values = np.asarray(returns, dtype=float)
        values = values[np.isfinite(values)]

    n = len(values)
    if n < min_observations:
        raise InsufficientData(
            f"GARCH needs at least {min_observations} returns, got {n}",
            required=min_observations,
            available=n,
        )

    pct = values * 100.0
    if float(pct.var()) <= 0:
        raise InsufficientData("Return series has zero variance", available=n)

    model = arch_model(
        pct, mean="Constant", vol="Garch", p=1, q=1, dist="normal", rescale=False
    )
    res = model.fit(disp="off", options={"maxiter": max_iterations})

    optimization = res.optimization_result
    diagnostics = {
        "iterations": int(getattr(optimization, "nit", 0)),
        "message": str(getattr(optimization, "message", "")),
        "status": int(res.convergence_flag),
        "observations": n,
    }
    if res.convergence_flag != 0 or not np.all(np.isfinite(res.params.to_numpy())):
        raise ConvergenceFailure(
            f"GARCH optimizer did not converge: {diagnostics['message']}",
            details=diagnostics,
        )

    params = GarchParams(
        omega=max(float(res.params["omega"]), 0.0),
        alpha=max(float(res.params["alpha[1]"]), 0.0),
        beta=max(float(res.params["beta[1]"]), 0.0),
    )
    conditional_volatility = np.asarray(res.conditional_volatility, dtype=float)
    next_variance = float(res.forecast(horizon=1, reindex=False).variance.to_numpy()[-1, 0])

    logger.info(
        f"GARCH fit: omega={params.omega:.6f} alpha={params.alpha:.4f} beta={params.beta:.4f} "
        f"persistence={params.persistence:.4f} iterations={diagnostics['iterations']}"
    )

    return GarchFit(
        params=params,
        mean=float(res.params["mu"]),
        observations=n,
        log_likelihood=float(res.loglikelihood),
        iterations=diagnostics["iterations"],
        converged=True,
        message=diagnostics["message"],
        last_variance=float(conditional_volatility[-1] ** 2),
        next_variance=next_variance,
    )


def forecast_variances(params: GarchParams, next_variance: float, horizon: int) -> np.ndarray:
    """
    Variance path for days 1..horizon.

    Day 1 is the one-step-ahead variance; later days follow
    σ²_{T+h} = ω + (α+β)·σ²_{T+h-1}, i.e. they decay geometrically towards
    the long-run variance at rate α+β.
    """
    if horizon < 1:
        raise ValueError(f"horizon must be >= 1, got {horizon}")
    path = np.empty(horizon)
    path[0] = next_variance
    for h in range(1, horizon):
        path[h] = params.omega + params.persistence * path[h - 1]
    return path


def realized_volatility(
    returns: pd.Series | np.ndarray, window: int = REALIZED_WINDOW
) -> float | None:
    """Annualized volatility of the last ``window`` returns, in percent."""
    values = np.asarray(returns, dtype=float)
    values = values[np.isfinite(values)]
    if len(values) < 2:
        return None
    recent = values[-window:]
    return float(np.std(recent, ddof=1) * np.sqrt(TRADING_DAYS) * 100)


def _forecast_warnings(
    params: GarchParams, current_vol: float | None, long_run_vol: float | None
) -> list[str]:
    warnings = []
    if not params.stationary:
        warnings.append(
            f"Non-stationary fit (persistence {params.persistence:.4f} >= 1): "
            "forecasts do not revert to a long-run level"
        )
    elif params.high_persistence:
        warnings.append(
            f"High persistence ({params.persistence:.4f}): volatility shocks decay slowly"
        )
    if params.alpha > HIGH_ALPHA:
        warnings.append(
            f"High alpha ({params.alpha:.4f}): volatility reacts strongly to new shocks"
        )
    if current_vol is not None and long_run_vol is not None and long_run_vol > 0:
        if current_vol > ELEVATED_VOL_RATIO * long_run_vol:
            warnings.append(
                f"Current volatility {current_vol:.1f}% is more than "
                f"{ELEVATED_VOL_RATIO}x the long-run level {long_run_vol:.1f}%"
            )
    return warnings


def build_forecast(
    fit: GarchFit,
    ticker: str,
    horizon: int,
    confidence: float = 0.95,
    current_volatility: float | None = None,
) -> VolatilityForecast:
    """
    Turn a fit into a forecast path with normal confidence bands.

    Daily bands are ``mean ± z·σ_h``; cumulative bands cover the sum of
    returns over days 1..h and use ``h·mean ± z·sqrt(Σσ²)``, where
    ``z = Φ⁻¹(0.5 + c/2)``.
    """
    if not 1 <= horizon <= MAX_HORIZON:
        raise ValueError(f"horizon must be between 1 and {MAX_HORIZON}, got {horizon}")
    if not 0 < confidence < 1:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")

    params = fit.params
    z = float(norm.ppf(0.5 + confidence / 2.0))
    variances = forecast_variances(params, fit.next_variance, horizon)
    cumulative = np.cumsum(variances)

    points = []
    for day, (variance, cum_variance) in enumerate(zip(variances, cumulative), start=1):
        vol = float(np.sqrt(variance))
        cum_vol = float(np.sqrt(cum_variance))
        points.append(
            ForecastPoint(
                day=day,
                variance=float(variance),
                volatility=vol,
                annualized_volatility=vol * np.sqrt(TRADING_DAYS),
                lower=fit.mean - z * vol,
                upper=fit.mean + z * vol,
                cumulative_volatility=cum_vol,
                cumulative_lower=day * fit.mean - z * cum_vol,
                cumulative_upper=day * fit.mean + z * cum_vol,
            )
        )

    long_run = params.long_run_variance
    long_run_vol = float(np.sqrt(long_run * TRADING_DAYS)) if long_run is not None else None

    return VolatilityForecast(
        ticker=ticker,
        horizon=horizon,
        confidence=confidence,
        fit=fit,
        points=tuple(points),
        current_volatility=current_volatility,
        long_run_volatility=long_run_vol,
        warnings=tuple(_forecast_warnings(params, current_volatility, long_run_vol)),
    )


def forecast_volatility(
    returns: pd.Series,
    ticker: str,
    horizon: int,
    confidence: float = 0.95,
    min_observations: int = MIN_OBSERVATIONS,
    max_iterations: int = MAX_ITERATIONS,
) -> VolatilityForecast:
    """Fit and forecast in one call. Safe to run in a worker process."""
    fit = fit_garch(returns, min_observations=min_observations, max_iterations=max_iterations)
    return build_forecast(
        fit,
        ticker=ticker,
        horizon=horizon,
        confidence=confidence,
        current_volatility=realized_volatility(clean_returns(returns).to_numpy()),
    )

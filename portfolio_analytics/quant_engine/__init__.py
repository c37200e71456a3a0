"""Stateless analytics engines: risk, correlation, GARCH and regime models."""

from .correlation import (
    CorrelationMatrix,
    CorrelationPair,
    PositionValue,
    compute_correlation_matrix,
    select_positions,
)
from .garch import (
    GarchFit,
    GarchParams,
    VolatilityForecast,
    build_forecast,
    fit_garch,
    forecast_volatility,
)
from .hmm import (
    REGIME_STATES,
    DiscretizationScheme,
    HmmModel,
    RegimeForecast,
    forecast_regime,
    train_hmm,
)
from .risk import (
    RiskLevel,
    RiskMetrics,
    compute_risk_metrics,
    portfolio_returns,
)


__all__ = [
    # Risk
    "RiskLevel",
    "RiskMetrics",
    "compute_risk_metrics",
    "portfolio_returns",
    # Correlation
    "CorrelationMatrix",
    "CorrelationPair",
    "PositionValue",
    "compute_correlation_matrix",
    "select_positions",
    # GARCH
    "GarchFit",
    "GarchParams",
    "VolatilityForecast",
    "build_forecast",
    "fit_garch",
    "forecast_volatility",
    # HMM
    "REGIME_STATES",
    "DiscretizationScheme",
    "HmmModel",
    "RegimeForecast",
    "forecast_regime",
    "train_hmm",
]

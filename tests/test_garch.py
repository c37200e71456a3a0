"""Tests for the GARCH(1,1) volatility model."""

from __future__ import annotations

import numpy as np
import pytest

from conftest import make_garch_returns, make_returns
from portfolio_analytics.core.exceptions import ConvergenceFailure, InsufficientData
from portfolio_analytics.quant_engine.garch import (
    GarchFit,
    GarchParams,
    build_forecast,
    fit_garch,
    forecast_variances,
    forecast_volatility,
)


def _fit(omega=0.02, alpha=0.08, beta=0.90, mean=0.05, next_variance=2.0) -> GarchFit:
    return GarchFit(
        params=GarchParams(omega=omega, alpha=alpha, beta=beta),
        mean=mean,
        observations=500,
        log_likelihood=-700.0,
        iterations=12,
        converged=True,
        message="Optimization terminated successfully",
        last_variance=1.8,
        next_variance=next_variance,
    )


class TestGarchParams:
    """Tests for parameter validation and derived quantities."""

    def test_negative_parameters_rejected(self):
        with pytest.raises(ValueError):
            GarchParams(omega=-0.1, alpha=0.1, beta=0.8)

    def test_high_persistence_threshold_is_inclusive(self):
        params = GarchParams(omega=0.01, alpha=0.10, beta=0.85)
        assert params.persistence == pytest.approx(0.95)
        assert params.high_persistence is True

    def test_long_run_variance(self):
        params = GarchParams(omega=0.02, alpha=0.08, beta=0.90)
        assert params.long_run_variance == pytest.approx(1.0)

    def test_non_stationary_has_no_long_run_level(self):
        params = GarchParams(omega=0.02, alpha=0.3, beta=0.75)
        assert params.stationary is False
        assert params.long_run_variance is None


class TestVariancePaths:
    """Tests for the variance recursions."""

    def test_forecast_decays_towards_long_run(self):
        params = GarchParams(omega=0.02, alpha=0.08, beta=0.90)
        path = forecast_variances(params, next_variance=2.0, horizon=60)

        assert path[0] == pytest.approx(2.0)
        assert path[1] == pytest.approx(0.02 + 0.98 * 2.0)
        assert np.all(np.diff(path) < 0)
        assert path[-1] > params.long_run_variance

    def test_horizon_must_be_positive(self):
        with pytest.raises(ValueError):
            forecast_variances(GarchParams(0.02, 0.08, 0.9), 1.0, 0)


class TestBuildForecast:
    """Tests for forecast bands and warnings."""

    def test_bands_use_normal_quantile(self):
        forecast = build_forecast(_fit(), "AAPL", horizon=5, confidence=0.95)

        first = forecast.points[0]
        z = 1.959964
        assert first.day == 1
        assert first.volatility == pytest.approx(np.sqrt(2.0))
        assert first.lower == pytest.approx(0.05 - z * np.sqrt(2.0), rel=1e-5)
        assert first.upper == pytest.approx(0.05 + z * np.sqrt(2.0), rel=1e-5)
        assert first.annualized_volatility == pytest.approx(np.sqrt(2.0) * np.sqrt(252))

    def test_cumulative_band_sums_variances(self):
        forecast = build_forecast(_fit(), "AAPL", horizon=3, confidence=0.95)

        variances = [p.variance for p in forecast.points]
        last = forecast.points[-1]
        assert last.cumulative_volatility == pytest.approx(np.sqrt(sum(variances)))
        assert last.cumulative_upper - last.cumulative_lower == pytest.approx(
            2 * 1.959964 * last.cumulative_volatility, rel=1e-5
        )

    def test_wider_confidence_widens_bands(self):
        narrow = build_forecast(_fit(), "AAPL", horizon=1, confidence=0.90).points[0]
        wide = build_forecast(_fit(), "AAPL", horizon=1, confidence=0.99).points[0]
        assert wide.upper - wide.lower > narrow.upper - narrow.lower

    def test_long_run_volatility_is_annualized(self):
        forecast = build_forecast(_fit(), "AAPL", horizon=1)
        assert forecast.long_run_volatility == pytest.approx(np.sqrt(252))

    def test_warnings(self):
        forecast = build_forecast(_fit(), "AAPL", horizon=1, current_volatility=30.0)

        assert any(w.startswith("High persistence") for w in forecast.warnings)
        assert any(w.startswith("Current volatility") for w in forecast.warnings)
        assert not any(w.startswith("High alpha") for w in forecast.warnings)

    def test_reactive_model_warns_on_alpha(self):
        forecast = build_forecast(_fit(alpha=0.2, beta=0.6), "AAPL", horizon=1)
        assert any(w.startswith("High alpha") for w in forecast.warnings)

    @pytest.mark.parametrize("horizon", [0, 91])
    def test_horizon_bounds(self, horizon):
        with pytest.raises(ValueError):
            build_forecast(_fit(), "AAPL", horizon=horizon)


class TestFitGarch:
    """Tests for maximum likelihood estimation."""

    def test_too_few_observations(self):
        with pytest.raises(InsufficientData) as exc_info:
            fit_garch(make_returns(100))
        assert exc_info.value.details["required"] == 250

    def test_zero_variance(self):
        with pytest.raises(InsufficientData):
            fit_garch(np.zeros(300))

    def test_iteration_budget_exhausted(self):
        with pytest.raises(ConvergenceFailure):
            fit_garch(make_garch_returns(1000), max_iterations=1)

    def test_recovers_simulated_parameters(self):
        fit = fit_garch(make_garch_returns(2000))

        assert fit.converged is True
        assert fit.observations == 2000
        assert 0.85 < fit.params.persistence < 1.0
        assert 0.03 < fit.params.alpha < 0.2
        assert fit.next_variance > 0

    def test_next_variance_follows_recursion(self):
        returns = make_garch_returns(1000)
        fit = fit_garch(returns)

        p = fit.params
        shock = returns.iloc[-1] * 100 - fit.mean
        expected = p.omega + p.alpha * shock**2 + p.beta * fit.last_variance
        assert fit.next_variance == pytest.approx(expected, rel=1e-6)

    def test_forecast_volatility(self):
        forecast = forecast_volatility(make_garch_returns(600), "SPY", horizon=10)

        assert forecast.ticker == "SPY"
        assert len(forecast.points) == 10
        assert forecast.current_volatility is not None
        assert all(p.lower < p.upper for p in forecast.points)

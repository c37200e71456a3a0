"""Tests for the risk metrics engine."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from conftest import make_returns
from portfolio_analytics.core.exceptions import InsufficientData
from portfolio_analytics.quant_engine.risk import (
    RiskLevel,
    annualized_volatility,
    compute_risk_metrics,
    estimate_beta,
    historical_var_es,
    max_drawdown,
    portfolio_returns,
    score_risk,
)


def _ladder() -> np.ndarray:
    """100 returns from -5.0% to +4.9% in 0.1% steps, shuffled."""
    values = np.round(np.arange(-0.05, 0.0495, 0.001), 6)
    rng = np.random.default_rng(1)
    return rng.permutation(values)


class TestHistoricalVarEs:
    """Tests for historical VaR and Expected Shortfall."""

    def test_var_takes_floor_index(self):
        var_95, es_95 = historical_var_es(_ladder(), 0.95)
        assert var_95 == pytest.approx(-4.5)
        assert es_95 == pytest.approx(-4.75)

    def test_var_99(self):
        var_99, es_99 = historical_var_es(_ladder(), 0.99)
        assert var_99 == pytest.approx(-4.9)
        assert es_99 == pytest.approx(-4.95)

    def test_es_never_exceeds_var(self):
        returns = make_returns(500, seed=3, vol=0.02).to_numpy()
        for confidence in (0.9, 0.95, 0.99):
            var, es = historical_var_es(returns, confidence)
            assert es <= var

    def test_invalid_confidence_rejected(self):
        with pytest.raises(ValueError):
            historical_var_es(_ladder(), 1.0)


class TestDrawdownAndVolatility:
    """Tests for drawdown and volatility conventions."""

    def test_max_drawdown_is_negative_percent(self):
        assert max_drawdown([0.1, -0.5, 0.2]) == pytest.approx(-50.0)

    def test_rising_series_has_no_drawdown(self):
        assert max_drawdown([0.01, 0.02, 0.0]) == 0.0

    def test_constant_returns_have_zero_volatility(self):
        assert annualized_volatility(np.full(50, 0.001)) == pytest.approx(0.0)

    def test_volatility_is_annualized(self):
        returns = make_returns(2000, seed=5, vol=0.01, drift=0.0)
        assert annualized_volatility(returns) == pytest.approx(0.01 * np.sqrt(252) * 100, rel=0.05)


class TestBeta:
    """Tests for beta estimation."""

    def test_leveraged_series_has_beta_two(self):
        bench = make_returns(200, seed=2)
        beta = estimate_beta(bench * 2, bench)
        assert beta.beta == pytest.approx(2.0)
        assert beta.r_squared == pytest.approx(1.0)
        assert beta.observations == 200

    def test_missing_benchmark(self):
        beta = estimate_beta(make_returns(50), None)
        assert beta.beta is None
        assert beta.unavailable_reason == "benchmark not provided"

    def test_constant_benchmark(self):
        asset = make_returns(50)
        bench = pd.Series(0.001, index=asset.index)
        beta = estimate_beta(asset, bench)
        assert beta.beta is None
        assert beta.unavailable_reason == "benchmark variance is zero"

    def test_too_little_overlap(self):
        asset = make_returns(100)
        bench = asset.iloc[:10]
        beta = estimate_beta(asset, bench, min_observations=20)
        assert beta.beta is None
        assert beta.observations == 10


class TestRiskScore:
    """Tests for the composite risk score."""

    def test_saturated_inputs_score_100(self):
        score, level = score_risk(volatility=80, drawdown=-70, beta=3.0, var_95=-12)
        assert score == 100.0
        assert level == RiskLevel.HIGH

    def test_calm_inputs_score_low(self):
        score, level = score_risk(volatility=5, drawdown=-2, beta=0.3, var_95=-0.5)
        assert score < 40
        assert level == RiskLevel.LOW

    def test_missing_beta_redistributes_weight(self):
        with_beta, _ = score_risk(volatility=25, drawdown=-25, beta=1.0, var_95=-5)
        without_beta, _ = score_risk(volatility=25, drawdown=-25, beta=None, var_95=-5)
        # Every component is at half saturation, so redistribution changes nothing
        assert with_beta == pytest.approx(50.0)
        assert without_beta == pytest.approx(50.0)


class TestComputeRiskMetrics:
    """Tests for the full risk profile."""

    def test_profile_fields(self):
        returns = make_returns(300, seed=7, vol=0.015)
        bench = make_returns(300, seed=8, vol=0.01)

        metrics = compute_risk_metrics(returns, benchmark=bench, risk_free_rate=0.04)

        assert metrics.observations == 300
        assert metrics.volatility > 0
        assert metrics.max_drawdown <= 0
        assert metrics.var_99 <= metrics.var_95 < 0
        assert metrics.es_95 <= metrics.var_95
        assert metrics.beta is not None
        assert 0 <= metrics.r_squared <= 1
        assert metrics.systematic_volatility ** 2 + metrics.idiosyncratic_volatility ** 2 == pytest.approx(
            metrics.volatility ** 2
        )
        assert 0 <= metrics.risk_score <= 100

    def test_insufficient_data(self):
        with pytest.raises(InsufficientData) as exc_info:
            compute_risk_metrics(make_returns(10), min_observations=20)
        assert exc_info.value.details == {"required": 20, "available": 10}

    def test_one_below_threshold(self):
        with pytest.raises(InsufficientData):
            compute_risk_metrics(make_returns(19))

    def test_non_finite_values_are_dropped(self):
        returns = make_returns(30)
        returns.iloc[3] = np.nan
        returns.iloc[4] = np.inf
        metrics = compute_risk_metrics(returns, min_observations=20)
        assert metrics.observations == 28

    def test_constant_returns_have_no_sharpe(self):
        index = pd.bdate_range("2025-01-01", periods=40)
        metrics = compute_risk_metrics(pd.Series(0.0, index=index))
        assert metrics.sharpe_ratio is None
        assert metrics.volatility == 0.0
        assert metrics.beta is None


class TestPortfolioReturns:
    """Tests for value-weighted portfolio returns."""

    def test_weights_are_normalized(self):
        index = pd.bdate_range("2025-01-01", periods=3)
        a = pd.Series([0.01, 0.02, -0.01], index=index)
        b = pd.Series([0.03, -0.02, 0.01], index=index)

        combined = portfolio_returns({"A": a, "B": b}, {"A": 300.0, "B": 100.0})

        expected = 0.75 * a + 0.25 * b
        np.testing.assert_allclose(combined.to_numpy(), expected.to_numpy())

    def test_zero_weight_positions_are_ignored(self):
        index = pd.bdate_range("2025-01-01", periods=3)
        a = pd.Series([0.01, 0.02, -0.01], index=index)
        b = pd.Series([0.5, 0.5, 0.5], index=index)

        combined = portfolio_returns({"A": a, "B": b}, {"A": 1.0, "B": 0.0})

        np.testing.assert_allclose(combined.to_numpy(), a.to_numpy())

    def test_series_are_aligned_on_common_dates(self):
        a = pd.Series([0.01, 0.02, 0.03], index=pd.bdate_range("2025-01-01", periods=3))
        b = pd.Series([0.01, 0.02], index=pd.bdate_range("2025-01-02", periods=2))

        combined = portfolio_returns({"A": a, "B": b}, {"A": 1.0, "B": 1.0})

        assert len(combined) == 2

    def test_no_usable_positions(self):
        assert portfolio_returns({}, {}).empty

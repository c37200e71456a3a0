"""Tests for the correlation engine."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from conftest import make_returns
from portfolio_analytics.quant_engine.correlation import (
    CorrelationPair,
    PositionValue,
    compute_correlation_matrix,
    correlation_stats,
    select_positions,
)


class TestSelectPositions:
    """Tests for picking the positions that enter the matrix."""

    def test_small_positions_are_dropped(self):
        positions = [
            PositionValue("AAPL", 5000),
            PositionValue("MSFT", 4950),
            PositionValue("TINY", 50),  # 0.5% of the portfolio
        ]
        assert select_positions(positions, min_weight=0.01) == ["AAPL", "MSFT"]

    def test_largest_positions_are_kept_and_sorted(self):
        positions = [PositionValue(f"T{i:02d}", 100 + i) for i in range(15)]
        chosen = select_positions(positions, max_positions=3, min_weight=0.0)
        assert chosen == ["T12", "T13", "T14"]

    def test_duplicate_tickers_are_aggregated(self):
        positions = [
            PositionValue("aapl", 10),
            PositionValue("AAPL", 10),
            PositionValue("MSFT", 15),
        ]
        chosen = select_positions(positions, max_positions=1, min_weight=0.0)
        assert chosen == ["AAPL"]

    def test_empty_portfolio(self):
        assert select_positions([PositionValue("AAPL", 0)]) == []


class TestCorrelationMatrix:
    """Tests for pairwise correlations."""

    def test_linear_relationships(self):
        base = make_returns(100, seed=1)
        noise = make_returns(100, seed=2)
        matrix = compute_correlation_matrix(
            {"B": base * 2, "A": base, "C": -base, "D": noise}
        )

        assert matrix.tickers == ("A", "B", "C", "D")
        assert matrix.get("A", "B") == pytest.approx(1.0)
        assert matrix.get("C", "A") == pytest.approx(-1.0)
        assert abs(matrix.get("A", "D")) < 0.5
        assert matrix.get("D", "D") == 1.0

    def test_pairs_are_upper_triangular(self):
        returns = {t: make_returns(60, seed=i) for i, t in enumerate(["C", "A", "B"])}
        matrix = compute_correlation_matrix(returns)

        assert [(p.ticker_a, p.ticker_b) for p in matrix.pairs] == [
            ("A", "B"),
            ("A", "C"),
            ("B", "C"),
        ]
        assert all(-1.0 <= p.correlation <= 1.0 for p in matrix.pairs)

    def test_series_are_clipped_to_common_range(self):
        index = pd.bdate_range("2025-01-01", periods=150)
        rng = np.random.default_rng(3)
        a = pd.Series(rng.normal(0, 0.01, 100), index=index[:100])
        b = pd.Series(rng.normal(0, 0.01, 100), index=index[50:])

        matrix = compute_correlation_matrix({"A": a, "B": b})

        assert matrix.start_date == index[50].date()
        assert matrix.end_date == index[99].date()
        assert matrix.pairs[0].observations == 50

    def test_short_overlap_is_omitted_not_zero(self):
        index = pd.bdate_range("2025-01-01", periods=30)
        rng = np.random.default_rng(4)
        a = pd.Series(rng.normal(0, 0.01, 30), index=index)
        b = pd.Series(rng.normal(0, 0.01, 10), index=index[::3])

        matrix = compute_correlation_matrix({"A": a, "B": b}, min_overlap=20)

        assert matrix.pairs == ()
        assert matrix.get("A", "B") is None
        assert matrix.stats is None

    def test_constant_series_is_omitted(self):
        returns = make_returns(50)
        flat = pd.Series(0.0, index=returns.index)
        matrix = compute_correlation_matrix({"A": returns, "FLAT": flat})
        assert matrix.get("A", "FLAT") is None

    def test_no_series(self):
        matrix = compute_correlation_matrix({})
        assert matrix.tickers == ()
        assert matrix.start_date is None

    def test_single_position_has_no_pairs(self):
        matrix = compute_correlation_matrix({"AAPL": make_returns(60)})

        assert matrix.tickers == ("AAPL",)
        assert matrix.pairs == ()
        assert matrix.stats is None


class TestCorrelationStats:
    """Tests for summary statistics."""

    def test_summary(self):
        pairs = [
            CorrelationPair("A", "B", 0.9, 100),
            CorrelationPair("A", "C", 0.5, 100),
            CorrelationPair("B", "C", 0.1, 100),
        ]
        stats = correlation_stats(pairs)

        assert stats.average == pytest.approx(0.5)
        assert stats.minimum == pytest.approx(0.1)
        assert stats.maximum == pytest.approx(0.9)
        assert stats.high_correlation_pairs == 1
        assert stats.diversification_score == pytest.approx(2.5)

    def test_diversification_score_is_bounded(self):
        negative = correlation_stats([CorrelationPair("A", "B", -0.9, 50)])
        perfect = correlation_stats([CorrelationPair("A", "B", 1.0, 50)])
        assert negative.diversification_score == 9.5
        assert perfect.diversification_score == 0.0


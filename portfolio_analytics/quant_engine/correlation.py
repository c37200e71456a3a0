"""
Pairwise correlation of position return series.

The matrix is stored sparsely: only pairs (a, b) with a before b in the
sorted ticker list. The diagonal is implicitly 1.0 and a missing pair means
the two series did not overlap enough, never zero correlation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Mapping

import numpy as np
import pandas as pd

from .risk import clean_returns


logger = logging.getLogger(__name__)

MAX_POSITIONS = 10
MIN_POSITION_WEIGHT = 0.01
MIN_OVERLAP = 20
HIGH_CORRELATION = 0.7


@dataclass(frozen=True)
class PositionValue:
    """Market value of a holding."""
    ticker: str
    market_value: float


@dataclass(frozen=True)
class CorrelationPair:
    """Pearson correlation of two tickers over their shared dates."""
    ticker_a: str
    ticker_b: str
    correlation: float
    observations: int


@dataclass(frozen=True)
class CorrelationStats:
    """Summary of the off-diagonal coefficients."""
    average: float
    minimum: float
    maximum: float
    std_dev: float
    high_correlation_pairs: int
    diversification_score: float


@dataclass(frozen=True)
class CorrelationMatrix:
    """Sorted tickers plus upper-triangular pairs."""
    tickers: tuple[str, ...]
    pairs: tuple[CorrelationPair, ...]
    start_date: date | None
    end_date: date | None
    stats: CorrelationStats | None

    def get(self, ticker_a: str, ticker_b: str) -> float | None:
        """Coefficient for two tickers; 1.0 on the diagonal, None if missing."""
        if ticker_a == ticker_b:
            return 1.0
        a, b = sorted((ticker_a, ticker_b))
        for pair in self.pairs:
            if pair.ticker_a == a and pair.ticker_b == b:
                return pair.correlation
        return None


def select_positions(
    positions: Iterable[PositionValue],
    max_positions: int = MAX_POSITIONS,
    min_weight: float = MIN_POSITION_WEIGHT,
) -> list[str]:
    """
    Pick the tickers that enter the correlation matrix.

    Values are aggregated per ticker; tickers below ``min_weight`` of total
    portfolio value are dropped and the ``max_positions`` largest remain.
    Returns the chosen tickers sorted alphabetically.
    """
    totals: dict[str, float] = {}
    for position in positions:
        if position.market_value > 0:
            ticker = position.ticker.upper()
            totals[ticker] = totals.get(ticker, 0.0) + float(position.market_value)

    portfolio_value = sum(totals.values())
    if portfolio_value <= 0:
        return []

    eligible = [
        (ticker, value)
        for ticker, value in totals.items()
        if value / portfolio_value >= min_weight
    ]
    eligible.sort(key=lambda item: (-item[1], item[0]))
    return sorted(ticker for ticker, _ in eligible[:max_positions])


def correlation_stats(pairs: Iterable[CorrelationPair]) -> CorrelationStats | None:
    """Summary statistics of pair coefficients, or None without pairs."""
    values = np.array([pair.correlation for pair in pairs], dtype=float)
    if values.size == 0:
        return None

    average = float(values.mean())
    return CorrelationStats(
        average=average,
        minimum=float(values.min()),
        maximum=float(values.max()),
        std_dev=float(values.std()),
        high_correlation_pairs=int((values > HIGH_CORRELATION).sum()),
        diversification_score=round(float(np.clip((1.0 - average) * 5.0, 0.0, 10.0)), 2),
    )


def compute_correlation_matrix(
    returns_by_ticker: Mapping[str, pd.Series],
    min_overlap: int = MIN_OVERLAP,
) -> CorrelationMatrix:
    """
    Pearson correlation for every pair of tickers with enough shared history.

    All series are first clipped to the common date range (latest first
    observation to earliest last observation). Each pair is then computed on
    the intersection of its dates; pairs with fewer than ``min_overlap``
    shared observations, or with a constant series, are omitted.

    Complexity is O(n² · m) for n tickers of length m; callers cap n.
    """
    tickers = tuple(sorted(returns_by_ticker))
    series = {
        ticker: clean_returns(returns_by_ticker[ticker])
        for ticker in tickers
        if returns_by_ticker[ticker] is not None
    }
    non_empty = [s for s in series.values() if len(s) > 0]

    if not non_empty:
        return CorrelationMatrix(tickers, (), None, None, None)

    start = max(s.index.min() for s in non_empty)
    end = min(s.index.max() for s in non_empty)
    clipped = {ticker: s[(s.index >= start) & (s.index <= end)] for ticker, s in series.items()}

    pairs: list[CorrelationPair] = []
    for i, ticker_a in enumerate(tickers):
        for ticker_b in tickers[i + 1:]:
            if ticker_a not in clipped or ticker_b not in clipped:
                continue
            joined = pd.concat(
                [clipped[ticker_a].rename("a"), clipped[ticker_b].rename("b")],
                axis=1,
                join="inner",
            ).dropna()
            n = len(joined)
            if n < min_overlap:
                continue
            a = joined["a"].to_numpy()
            b = joined["b"].to_numpy()
            if np.std(a) == 0 or np.std(b) == 0:
                continue
            coefficient = float(np.clip(np.corrcoef(a, b)[0, 1], -1.0, 1.0))
            if not np.isfinite(coefficient):
                continue
            pairs.append(CorrelationPair(ticker_a, ticker_b, coefficient, n))

    logger.debug(f"Correlation matrix: {len(tickers)} tickers, {len(pairs)} pairs")

    return CorrelationMatrix(
        tickers=tickers,
        pairs=tuple(pairs),
        start_date=_as_date(start),
        end_date=_as_date(end),
        stats=correlation_stats(pairs),
    )


def _as_date(value) -> date | None:
    if value is None:
        return None
    if isinstance(value, (pd.Timestamp, datetime)):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.Timestamp(value).date()

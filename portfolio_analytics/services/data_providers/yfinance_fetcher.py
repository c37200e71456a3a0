"""Daily close prices from Yahoo Finance.

yfinance is blocking, so every call runs on a small dedicated thread pool.
Failures are classified into :class:`FailureType` for the failure tracker.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta

import pandas as pd
import yfinance as yf
from yfinance.exceptions import YFRateLimitError

from portfolio_analytics.core.logging import get_logger

from .failure_tracker import FailureType, ProviderError


logger = get_logger("data_providers.yfinance")

# Shared by all fetchers; yfinance is not friendly to wide parallelism
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="yfinance")

_NOT_FOUND_HINTS = ("delisted", "no data found", "not found", "no timezone found")
_RATE_LIMIT_HINTS = ("too many requests", "rate limit", "429")


def classify_error(exc: Exception) -> FailureType:
    if isinstance(exc, YFRateLimitError):
        return FailureType.RATE_LIMITED
    text = str(exc).lower()
    if any(hint in text for hint in _RATE_LIMIT_HINTS):
        return FailureType.RATE_LIMITED
    if any(hint in text for hint in _NOT_FOUND_HINTS):
        return FailureType.NOT_FOUND
    return FailureType.API_ERROR


class YFinancePriceFetcher:
    """Fetches adjusted daily closes for one ticker."""

    def _history_sync(self, ticker: str, start: date, end: date) -> pd.Series:
        try:
            df = yf.Ticker(ticker).history(
                start=start.isoformat(),
                # yfinance treats ``end`` as exclusive
                end=(end + timedelta(days=1)).isoformat(),
                interval="1d",
                auto_adjust=True,
                raise_errors=True,
            )
        except Exception as e:
            failure_type = classify_error(e)
            raise ProviderError(failure_type, str(e) or type(e).__name__) from e

        if df is None or df.empty or "Close" not in df.columns:
            raise ProviderError(FailureType.NOT_FOUND, f"No price data for {ticker}")

        closes = df["Close"].dropna()
        index = pd.DatetimeIndex(closes.index)
        if index.tz is not None:
            index = index.tz_localize(None)
        closes.index = index.normalize()
        closes = closes[~closes.index.duplicated(keep="last")].sort_index()
        if closes.empty:
            raise ProviderError(FailureType.NOT_FOUND, f"No price data for {ticker}")
        return closes.astype(float)

    async def fetch_closes(self, ticker: str, start: date, end: date) -> pd.Series:
        """
        Daily closes indexed by date.

        Raises:
            ProviderError: classified fetch failure
        """
        loop = asyncio.get_running_loop()
        closes = await loop.run_in_executor(
            _executor, self._history_sync, ticker.upper(), start, end
        )
        logger.debug(f"Fetched {len(closes)} closes for {ticker}")
        return closes

"""Failure-tracked refresh of stored prices from the upstream provider."""

from __future__ import annotations

from datetime import date
from typing import Protocol

import pandas as pd

from portfolio_analytics.core.exceptions import UpstreamUnavailable
from portfolio_analytics.core.logging import get_logger
from portfolio_analytics.repositories.stores import TimeSeriesStore

from .failure_tracker import FailureType, ProviderError, ProviderFailureTracker


logger = get_logger("services.price_refresher")


class PriceFetcher(Protocol):
    async def fetch_closes(self, ticker: str, start: date, end: date) -> pd.Series: ...


class PriceRefresher:
    """Fetches closes for a ticker, but only when the failure tracker allows it."""

    def __init__(
        self,
        tracker: ProviderFailureTracker,
        fetcher: PriceFetcher,
        store: TimeSeriesStore,
    ):
        self.tracker = tracker
        self.fetcher = fetcher
        self.store = store

    async def refresh(self, ticker: str, start: date, end: date) -> int:
        """
        Fetch and store closes between two dates.

        Returns the number of rows stored.

        Raises:
            UpstreamUnavailable: the ticker is backing off or the fetch failed
        """
        ticker = ticker.upper()
        if not await self.tracker.should_attempt(ticker):
            record = await self.tracker.get_record(ticker)
            raise UpstreamUnavailable(
                f"Skipping fetch for {ticker} until backoff ends",
                details={
                    "ticker": ticker,
                    "retry_after": record.retry_after.isoformat() if record else None,
                },
            )

        try:
            closes = await self.fetcher.fetch_closes(ticker, start, end)
        except ProviderError as e:
            await self.tracker.record_failure(ticker, e.failure_type, e.message)
            raise UpstreamUnavailable(
                f"Fetching {ticker} failed: {e.message}",
                details={"ticker": ticker, "failure_type": e.failure_type.value},
            ) from e
        except Exception as e:
            # Unclassified errors still count against the ticker
            await self.tracker.record_failure(ticker, FailureType.API_ERROR, str(e))
            raise UpstreamUnavailable(
                f"Fetching {ticker} failed: {e}",
                details={"ticker": ticker, "failure_type": FailureType.API_ERROR.value},
            ) from e

        stored = await self.store.upsert_closes(ticker, closes)
        await self.tracker.record_success(ticker)
        logger.info(f"Refreshed {stored} closes for {ticker}")
        return stored

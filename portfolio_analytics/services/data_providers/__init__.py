"""Upstream data providers and their failure tracking."""

from .failure_tracker import (
    BackoffPolicy,
    FailureStore,
    FailureType,
    MemoryFailureStore,
    ProviderError,
    ProviderFailureRecord,
    ProviderFailureTracker,
)
from .price_refresher import PriceRefresher
from .yfinance_fetcher import YFinancePriceFetcher


__all__ = [
    "BackoffPolicy",
    "FailureStore",
    "FailureType",
    "MemoryFailureStore",
    "PriceRefresher",
    "ProviderError",
    "ProviderFailureRecord",
    "ProviderFailureTracker",
    "YFinancePriceFetcher",
]

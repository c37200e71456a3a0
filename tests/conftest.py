"""Pytest configuration and fixtures."""

from __future__ import annotations

import os

# Settings are read at import time, so configure before importing the package
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SCHEDULER_DISTRIBUTED_LOCK", "false")
os.environ.setdefault("COMPUTE_EXECUTOR", "inline")
os.environ.setdefault("LOG_FORMAT", "text")

from datetime import datetime, timedelta, timezone
from typing import Generator

import numpy as np
import pandas as pd
import pytest
from fastapi.testclient import TestClient

from portfolio_analytics.cache.coordinator import CacheCoordinator, CachePolicy
from portfolio_analytics.cache.store import MemoryCacheEntryStore
from portfolio_analytics.repositories.stores import (
    Holding,
    MemoryHmmModelStore,
    MemoryPortfolioStore,
    MemorySnapshotStore,
    MemoryTimeSeriesStore,
)
from portfolio_analytics.services.analytics import AnalyticsService
from portfolio_analytics.services.compute_pool import ComputePool


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_closes(
    n: int,
    *,
    seed: int = 0,
    vol: float = 0.01,
    drift: float = 0.0003,
    start: float = 100.0,
    end: str = "2026-03-02",
) -> pd.Series:
    """Random-walk closes on business days ending at ``end``."""
    rng = np.random.default_rng(seed)
    returns = rng.normal(drift, vol, n)
    index = pd.bdate_range(end=end, periods=n + 1)
    prices = start * np.cumprod(np.concatenate([[1.0], 1 + returns]))
    return pd.Series(prices, index=index)


def make_returns(n: int, *, seed: int = 0, vol: float = 0.01, drift: float = 0.0003) -> pd.Series:
    return make_closes(n, seed=seed, vol=vol, drift=drift).pct_change().dropna()


def make_garch_returns(
    n: int,
    omega: float = 0.05,
    alpha: float = 0.10,
    beta: float = 0.85,
    *,
    seed: int = 11,
    end: str = "2026-03-02",
) -> pd.Series:
    """Decimal returns whose percentage shocks follow GARCH(1,1)."""
    rng = np.random.default_rng(seed)
    variance = omega / (1 - alpha - beta)
    shocks = np.empty(n)
    for t in range(n):
        shocks[t] = np.sqrt(variance) * rng.standard_normal()
        variance = omega + alpha * shocks[t] ** 2 + beta * variance
    index = pd.bdate_range(end=end, periods=n)
    return pd.Series(shocks / 100.0, index=index)


def closes_from_returns(returns: pd.Series, start: float = 100.0) -> pd.Series:
    first = returns.index[0] - pd.offsets.BDay(1)
    prices = start * (1 + returns).cumprod()
    return pd.concat([pd.Series([start], index=[first]), prices])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> MemoryCacheEntryStore:
    return MemoryCacheEntryStore()


@pytest.fixture
def coordinator(memory_store: MemoryCacheEntryStore, clock: FakeClock) -> CacheCoordinator:
    policy = CachePolicy(
        lease=timedelta(minutes=10),
        retry_base=timedelta(minutes=1),
        retry_max=timedelta(hours=6),
        wait_timeout=1.0,
        poll_interval=0.01,
        fail_open=True,
    )
    return CacheCoordinator(memory_store, policy=policy, clock=clock)


@pytest.fixture
def service(coordinator: CacheCoordinator, clock: FakeClock) -> AnalyticsService:
    """Analytics service over in-memory stores seeded with synthetic prices."""
    time_series = MemoryTimeSeriesStore(
        {
            "AAPL": make_closes(400, seed=1, vol=0.015),
            "MSFT": make_closes(400, seed=2, vol=0.012),
            "SPY": make_closes(600, seed=3, vol=0.008),
            "VOL": closes_from_returns(make_garch_returns(600, seed=5)),
        }
    )
    portfolios = MemoryPortfolioStore(
        {
            1: [Holding("AAPL", 10), Holding("MSFT", 5)],
            2: [],
        }
    )
    return AnalyticsService(
        coordinator=coordinator,
        time_series=time_series,
        portfolios=portfolios,
        hmm_models=MemoryHmmModelStore(),
        snapshots=MemorySnapshotStore(),
        compute_pool=ComputePool("inline"),
        clock=clock,
    )


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Drop process-wide services between tests."""
    from portfolio_analytics.services.analytics import reset_analytics_service

    reset_analytics_service()
    yield
    reset_analytics_service()


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app."""
    from portfolio_analytics.api.app import create_api_app

    app = create_api_app()
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

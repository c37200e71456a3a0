"""Tests for provider failure tracking and the price refresher."""

from __future__ import annotations

from datetime import date, timedelta
from unittest.mock import AsyncMock

import pandas as pd
import pytest

from portfolio_analytics.core.exceptions import UpstreamUnavailable
from portfolio_analytics.repositories.stores import MemoryTimeSeriesStore
from portfolio_analytics.services.data_providers import (
    BackoffPolicy,
    FailureType,
    MemoryFailureStore,
    PriceRefresher,
    ProviderError,
    ProviderFailureRecord,
    ProviderFailureTracker,
)
from portfolio_analytics.services.data_providers.yfinance_fetcher import classify_error


@pytest.fixture
def tracker(clock) -> ProviderFailureTracker:
    return ProviderFailureTracker(MemoryFailureStore(), policy=BackoffPolicy(), clock=clock)


class TestBackoffPolicy:
    """Tests for retry delays per failure type."""

    def test_not_found_is_fixed(self):
        policy = BackoffPolicy()
        assert policy.delay(FailureType.NOT_FOUND, 0) == timedelta(hours=24)
        assert policy.delay(FailureType.NOT_FOUND, 5) == timedelta(hours=24)

    def test_rate_limited_doubles_until_max_interval(self):
        policy = BackoffPolicy()
        assert policy.delay(FailureType.RATE_LIMITED, 0) == timedelta(hours=1)
        assert policy.delay(FailureType.RATE_LIMITED, 1) == timedelta(hours=2)
        assert policy.delay(FailureType.RATE_LIMITED, 3) == timedelta(hours=8)
        assert policy.delay(FailureType.RATE_LIMITED, 5) == timedelta(hours=24)

    def test_api_error_starts_at_six_hours(self):
        policy = BackoffPolicy()
        assert policy.delay(FailureType.API_ERROR, 0) == timedelta(hours=6)
        assert policy.delay(FailureType.API_ERROR, 1) == timedelta(hours=12)
        assert policy.delay(FailureType.API_ERROR, 2) == timedelta(hours=24)

    def test_exponent_is_capped(self):
        policy = BackoffPolicy(
            rate_limited_base=timedelta(minutes=1),
            exponent_cap=3,
            max_interval=timedelta(days=30),
        )
        assert policy.delay(FailureType.RATE_LIMITED, 3) == timedelta(minutes=8)
        assert policy.delay(FailureType.RATE_LIMITED, 40) == timedelta(minutes=8)


class TestProviderFailureTracker:
    """Tests for the per-ticker fetch gate."""

    @pytest.mark.asyncio
    async def test_unknown_ticker_is_attempted(self, tracker):
        assert await tracker.should_attempt("AAPL") is True

    @pytest.mark.asyncio
    async def test_failure_blocks_until_retry_after(self, tracker, clock):
        record = await tracker.record_failure("aapl", FailureType.RATE_LIMITED, "429")

        assert record.ticker == "AAPL"
        assert record.consecutive_failures == 1
        assert record.retry_after == clock.now + timedelta(hours=1)
        assert await tracker.should_attempt("AAPL") is False

        clock.advance(minutes=59)
        assert await tracker.should_attempt("AAPL") is False
        clock.advance(minutes=1)
        assert await tracker.should_attempt("AAPL") is True

    @pytest.mark.asyncio
    async def test_consecutive_failures_back_off_exponentially(self, tracker, clock):
        await tracker.record_failure("MSFT", "api_error", "500")
        clock.advance(hours=7)
        record = await tracker.record_failure("MSFT", "api_error", "500")

        assert record.consecutive_failures == 2
        assert record.retry_after == clock.now + timedelta(hours=12)

    @pytest.mark.asyncio
    async def test_failure_type_is_last_observed(self, tracker):
        await tracker.record_failure("XYZ", FailureType.API_ERROR, "boom")
        record = await tracker.record_failure("XYZ", FailureType.NOT_FOUND, "delisted")

        assert record.failure_type == FailureType.NOT_FOUND
        assert record.consecutive_failures == 2

    @pytest.mark.asyncio
    async def test_success_clears_record(self, tracker):
        await tracker.record_failure("AAPL", FailureType.API_ERROR, "boom")
        await tracker.record_success("aapl")

        assert await tracker.get_record("AAPL") is None
        assert await tracker.should_attempt("AAPL") is True

    @pytest.mark.asyncio
    async def test_long_messages_are_truncated(self, tracker):
        record = await tracker.record_failure("AAPL", FailureType.API_ERROR, "x" * 2000)
        assert len(record.error_message) == 500

    @pytest.mark.asyncio
    async def test_sweep_removes_long_expired_records(self, clock):
        store = MemoryFailureStore()
        tracker = ProviderFailureTracker(store, policy=BackoffPolicy(), clock=clock)
        store.put(
            ProviderFailureRecord(
                ticker="old",
                failure_type=FailureType.NOT_FOUND,
                consecutive_failures=1,
                retry_after=clock.now - timedelta(days=5),
                last_attempt_at=clock.now - timedelta(days=6),
            )
        )
        await tracker.record_failure("NEW", FailureType.API_ERROR, "boom")

        removed = await tracker.sweep(grace=timedelta(hours=72))

        assert removed == 1
        assert await tracker.get_record("OLD") is None
        assert [r.ticker for r in await tracker.active_failures()] == ["NEW"]


class TestClassifyError:
    """Tests for mapping provider exceptions to failure types."""

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("Too Many Requests. Rate limited. Try after a while.", FailureType.RATE_LIMITED),
            ("$XYZ: possibly delisted; no price data found", FailureType.NOT_FOUND),
            ("Connection reset by peer", FailureType.API_ERROR),
        ],
    )
    def test_classification(self, message, expected):
        assert classify_error(RuntimeError(message)) == expected


class TestPriceRefresher:
    """Tests for failure-gated price refreshes."""

    @pytest.mark.asyncio
    async def test_success_stores_and_clears(self, tracker, clock):
        await tracker.store.record_failure(
            "AAPL", FailureType.API_ERROR, "old", clock.now - timedelta(days=1), BackoffPolicy()
        )
        closes = pd.Series([1.0, 2.0], index=pd.to_datetime(["2026-02-26", "2026-02-27"]))
        fetcher = AsyncMock()
        fetcher.fetch_closes.return_value = closes
        store = MemoryTimeSeriesStore()
        refresher = PriceRefresher(tracker, fetcher, store)

        stored = await refresher.refresh("aapl", date(2026, 2, 1), date(2026, 2, 27))

        assert stored == 2
        assert await store.latest_date("AAPL") == date(2026, 2, 27)
        assert await tracker.get_record("AAPL") is None

    @pytest.mark.asyncio
    async def test_backing_off_ticker_is_not_fetched(self, tracker):
        await tracker.record_failure("AAPL", FailureType.NOT_FOUND, "delisted")
        fetcher = AsyncMock()
        refresher = PriceRefresher(tracker, fetcher, MemoryTimeSeriesStore())

        with pytest.raises(UpstreamUnavailable):
            await refresher.refresh("AAPL", date(2026, 2, 1), date(2026, 2, 27))

        fetcher.fetch_closes.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_error_is_recorded(self, tracker):
        fetcher = AsyncMock()
        fetcher.fetch_closes.side_effect = ProviderError(FailureType.RATE_LIMITED, "429")
        refresher = PriceRefresher(tracker, fetcher, MemoryTimeSeriesStore())

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await refresher.refresh("AAPL", date(2026, 2, 1), date(2026, 2, 27))

        record = await tracker.get_record("AAPL")
        assert record.failure_type == FailureType.RATE_LIMITED
        assert exc_info.value.details["failure_type"] == "rate_limited"

    @pytest.mark.asyncio
    async def test_unclassified_error_counts_as_api_error(self, tracker):
        fetcher = AsyncMock()
        fetcher.fetch_closes.side_effect = ConnectionError("reset")
        refresher = PriceRefresher(tracker, fetcher, MemoryTimeSeriesStore())

        with pytest.raises(UpstreamUnavailable):
            await refresher.refresh("AAPL", date(2026, 2, 1), date(2026, 2, 27))

        record = await tracker.get_record("AAPL")
        assert record.failure_type == FailureType.API_ERROR

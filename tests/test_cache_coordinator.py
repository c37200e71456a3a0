"""Tests for the cache coordinator and the in-memory entry store."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from portfolio_analytics.cache.coordinator import CacheCoordinator, CachePolicy
from portfolio_analytics.cache.entries import ArtifactKind, CacheKey, CacheStatus
from portfolio_analytics.cache.payloads import encode_payload
from portfolio_analytics.core.exceptions import (
    AlreadyCalculating,
    ArtifactUnavailable,
    InsufficientData,
)
from portfolio_analytics.schemas.analytics import TextArtifactPayload


KEY = CacheKey.build(ArtifactKind.NARRATIVE, "AAPL", lang="en")
TTL = timedelta(hours=1)


def _payload(content: str = "calm markets") -> TextArtifactPayload:
    return TextArtifactPayload(subject="AAPL", content=content)


# =============================================================================
# Keys and policy
# =============================================================================


class TestCacheKey:
    """Tests for canonical key construction."""

    def test_parameter_order_does_not_matter(self):
        a = CacheKey.build(ArtifactKind.RISK, "AAPL", days=365, benchmark="SPY")
        b = CacheKey.build(ArtifactKind.RISK, "AAPL", benchmark="SPY", days=365)
        assert a == b
        assert a.params_key == "benchmark=SPY,days=365"

    def test_kinds_are_separate(self):
        a = CacheKey.build(ArtifactKind.RISK, "1", days=365)
        b = CacheKey.build(ArtifactKind.PORTFOLIO_RISK, "1", days=365)
        assert a != b

    def test_integer_subject_is_stringified(self):
        assert CacheKey.build(ArtifactKind.CORRELATIONS, 7).subject == "7"


class TestCachePolicy:
    """Tests for computation backoff."""

    def test_backoff_doubles(self):
        policy = CachePolicy(retry_base=timedelta(minutes=1), retry_max=timedelta(hours=6))
        assert policy.backoff(1) == timedelta(minutes=1)
        assert policy.backoff(2) == timedelta(minutes=2)
        assert policy.backoff(4) == timedelta(minutes=8)

    def test_backoff_is_capped(self):
        policy = CachePolicy(retry_base=timedelta(minutes=1), retry_max=timedelta(hours=6))
        assert policy.backoff(20) == timedelta(hours=6)
        assert policy.backoff(500) == timedelta(hours=6)


# =============================================================================
# get_or_compute
# =============================================================================


class TestGetOrCompute:
    """Tests for check-then-compute behaviour."""

    @pytest.mark.asyncio
    async def test_miss_computes_and_stores(self, coordinator, memory_store, clock):
        compute = AsyncMock(return_value=_payload())

        result = await coordinator.get_or_compute(KEY, TTL, compute)

        assert result.computed is True
        assert result.is_stale is False
        assert result.status == CacheStatus.FRESH
        assert result.value.content == "calm markets"
        assert result.expires_at == clock.now + TTL
        entry = await memory_store.get(KEY)
        assert entry.status == CacheStatus.FRESH
        assert entry.lease_token is None

    @pytest.mark.asyncio
    async def test_fresh_hit_skips_compute(self, coordinator):
        compute = AsyncMock(return_value=_payload())

        await coordinator.get_or_compute(KEY, TTL, compute)
        result = await coordinator.get_or_compute(KEY, TTL, compute)

        assert compute.await_count == 1
        assert result.computed is False
        assert result.is_stale is False
        assert result.value == _payload()

    @pytest.mark.asyncio
    async def test_expired_entry_is_recomputed(self, coordinator, clock):
        compute = AsyncMock(side_effect=[_payload("first"), _payload("second")])

        await coordinator.get_or_compute(KEY, TTL, compute)
        clock.advance(hours=1, seconds=1)
        result = await coordinator.get_or_compute(KEY, TTL, compute)

        assert compute.await_count == 2
        assert result.value.content == "second"
        assert result.computed is True

    @pytest.mark.asyncio
    async def test_numeric_ttl_is_seconds(self, coordinator, clock):
        result = await coordinator.get_or_compute(KEY, 90, AsyncMock(return_value=_payload()))
        assert result.expires_at == clock.now + timedelta(seconds=90)

    @pytest.mark.asyncio
    async def test_concurrent_callers_compute_once(self, coordinator):
        calls = 0

        async def slow_compute():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return _payload()

        results = await asyncio.gather(
            *(coordinator.get_or_compute(KEY, TTL, slow_compute) for _ in range(5))
        )

        assert calls == 1
        assert sum(r.computed for r in results) == 1
        assert all(r.value == _payload() for r in results)
        assert all(not r.is_stale for r in results)

    @pytest.mark.asyncio
    async def test_wrong_payload_type_is_rejected(self, coordinator, memory_store):
        compute = AsyncMock(return_value={"content": "not a model"})

        with pytest.raises(TypeError):
            await coordinator.get_or_compute(KEY, TTL, compute)

        entry = await memory_store.get(KEY)
        assert entry.status == CacheStatus.ERROR
        assert entry.error_code == "COMPUTE_ERROR"


class TestFailures:
    """Tests for error recording, backoff and fail-open serving."""

    @pytest.mark.asyncio
    async def test_failure_without_previous_value_raises(self, coordinator, memory_store, clock):
        compute = AsyncMock(side_effect=RuntimeError("provider exploded"))

        with pytest.raises(RuntimeError):
            await coordinator.get_or_compute(KEY, TTL, compute)

        entry = await memory_store.get(KEY)
        assert entry.status == CacheStatus.ERROR
        assert entry.retry_count == 1
        assert entry.retry_at == clock.now + timedelta(minutes=1)
        assert entry.last_error == "provider exploded"

    @pytest.mark.asyncio
    async def test_backoff_blocks_recompute(self, coordinator, clock):
        compute = AsyncMock(side_effect=RuntimeError("boom"))
        with pytest.raises(RuntimeError):
            await coordinator.get_or_compute(KEY, TTL, compute)

        clock.advance(seconds=30)
        with pytest.raises(ArtifactUnavailable) as exc_info:
            await coordinator.get_or_compute(KEY, TTL, compute)

        assert compute.await_count == 1
        assert exc_info.value.details["retry_after"] == pytest.approx(30.0)
        assert exc_info.value.response_headers()["Retry-After"]

    @pytest.mark.asyncio
    async def test_backoff_grows_with_consecutive_failures(self, coordinator, memory_store, clock):
        compute = AsyncMock(side_effect=RuntimeError("boom"))
        with pytest.raises(RuntimeError):
            await coordinator.get_or_compute(KEY, TTL, compute)

        clock.advance(minutes=1, seconds=1)
        with pytest.raises(RuntimeError):
            await coordinator.get_or_compute(KEY, TTL, compute)

        entry = await memory_store.get(KEY)
        assert entry.retry_count == 2
        assert entry.retry_at == clock.now + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_success_resets_retry_count(self, coordinator, memory_store, clock):
        compute = AsyncMock(side_effect=[RuntimeError("boom"), _payload()])
        with pytest.raises(RuntimeError):
            await coordinator.get_or_compute(KEY, TTL, compute)

        clock.advance(minutes=2)
        result = await coordinator.get_or_compute(KEY, TTL, compute)

        entry = await memory_store.get(KEY)
        assert result.computed is True
        assert entry.status == CacheStatus.FRESH
        assert entry.retry_count == 0
        assert entry.last_error is None

    @pytest.mark.asyncio
    async def test_failed_recompute_serves_previous_value(self, coordinator, clock):
        compute = AsyncMock(side_effect=[_payload("old"), RuntimeError("timeout")])
        await coordinator.get_or_compute(KEY, TTL, compute)
        clock.advance(hours=2)

        result = await coordinator.get_or_compute(KEY, TTL, compute)

        assert result.value.content == "old"
        assert result.is_stale is True
        assert result.status == CacheStatus.ERROR
        assert result.last_error == "timeout"

    @pytest.mark.asyncio
    async def test_previous_value_served_during_backoff(self, coordinator, clock):
        compute = AsyncMock(side_effect=[_payload("old"), RuntimeError("timeout")])
        await coordinator.get_or_compute(KEY, TTL, compute)
        clock.advance(hours=2)
        await coordinator.get_or_compute(KEY, TTL, compute)

        result = await coordinator.get_or_compute(KEY, TTL, compute)

        assert compute.await_count == 2
        assert result.value.content == "old"
        assert result.is_stale is True

    @pytest.mark.asyncio
    async def test_fail_closed_raises_even_with_previous_value(self, coordinator, clock):
        compute = AsyncMock(side_effect=[_payload("old"), RuntimeError("timeout")])
        await coordinator.get_or_compute(KEY, TTL, compute)
        clock.advance(hours=2)

        with pytest.raises(RuntimeError):
            await coordinator.get_or_compute(KEY, TTL, compute, fail_open=False)

    @pytest.mark.asyncio
    async def test_insufficient_data_is_never_served_stale(self, coordinator, clock):
        compute = AsyncMock(
            side_effect=[_payload("old"), InsufficientData("too short", required=20, available=5)]
        )
        await coordinator.get_or_compute(KEY, TTL, compute)
        clock.advance(hours=2)

        with pytest.raises(InsufficientData):
            await coordinator.get_or_compute(KEY, TTL, compute)

        # Still backing off: the same error is reported without recomputing
        with pytest.raises(InsufficientData):
            await coordinator.get_or_compute(KEY, TTL, compute)
        assert compute.await_count == 2


class TestLeases:
    """Tests for lease ownership, expiry and cancellation."""

    @pytest.mark.asyncio
    async def test_cancelled_compute_releases_lease(self, coordinator, memory_store):
        started = asyncio.Event()

        async def never_finishes():
            started.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(coordinator.get_or_compute(KEY, TTL, never_finishes))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        entry = await memory_store.get(KEY)
        assert entry.status == CacheStatus.STALE
        assert entry.lease_token is None

    @pytest.mark.asyncio
    async def test_lapsed_lease_is_reclaimed(self, coordinator, memory_store, clock):
        await memory_store.claim(KEY, "crashed-worker", clock.now, clock.now + timedelta(minutes=10))
        clock.advance(minutes=11)

        result = await coordinator.get_or_compute(KEY, TTL, AsyncMock(return_value=_payload()))

        assert result.computed is True
        # The crashed holder can no longer write
        assert not await memory_store.complete(
            KEY, "crashed-worker", encode_payload(KEY.kind, _payload("late")), clock.now, clock.now
        )

    @pytest.mark.asyncio
    async def test_busy_key_without_value_raises_already_calculating(self, memory_store, clock):
        coordinator = CacheCoordinator(
            memory_store, policy=CachePolicy(wait_timeout=0.05, poll_interval=0.01), clock=clock
        )
        await memory_store.claim(KEY, "other", clock.now, clock.now + timedelta(minutes=10))

        with pytest.raises(AlreadyCalculating):
            await coordinator.get_or_compute(KEY, TTL, AsyncMock(return_value=_payload()))

    @pytest.mark.asyncio
    async def test_waiter_computes_when_winner_gives_up(self, memory_store, clock):
        coordinator = CacheCoordinator(
            memory_store, policy=CachePolicy(wait_timeout=1.0, poll_interval=0.01), clock=clock
        )
        await memory_store.claim(KEY, "other", clock.now, clock.now + timedelta(minutes=10))

        async def give_up():
            await asyncio.sleep(0.03)
            await memory_store.release(KEY, "other")

        releaser = asyncio.create_task(give_up())
        compute = AsyncMock(return_value=_payload("mine"))

        result = await coordinator.get_or_compute(KEY, TTL, compute)
        await releaser

        compute.assert_awaited_once()
        assert result.computed is True
        assert result.value.content == "mine"

    @pytest.mark.asyncio
    async def test_busy_key_serves_previous_value(self, memory_store, clock):
        coordinator = CacheCoordinator(
            memory_store, policy=CachePolicy(wait_timeout=0.05, poll_interval=0.01), clock=clock
        )
        await coordinator.get_or_compute(KEY, TTL, AsyncMock(return_value=_payload("old")))
        clock.advance(hours=2)
        await memory_store.claim(KEY, "other", clock.now, clock.now + timedelta(minutes=10))
        compute = AsyncMock(return_value=_payload("new"))

        result = await coordinator.get_or_compute(KEY, TTL, compute)

        compute.assert_not_awaited()
        assert result.value.content == "old"
        assert result.is_stale is True
        assert result.status == CacheStatus.CALCULATING


class TestPayloadsAndMaintenance:
    """Tests for corrupt payloads, invalidation, health and purge."""

    @pytest.mark.asyncio
    async def test_corrupt_payload_is_recomputed(self, coordinator, memory_store, clock):
        await memory_store.claim(KEY, "t", clock.now, clock.now + timedelta(minutes=1))
        await memory_store.complete(
            KEY,
            "t",
            {"kind": "narrative", "schema_version": 99, "data": {}},
            clock.now,
            clock.now + TTL,
        )
        compute = AsyncMock(return_value=_payload())

        result = await coordinator.get_or_compute(KEY, TTL, compute)

        assert result.computed is True
        compute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalidate_marks_entries_stale(self, coordinator):
        risk_key = CacheKey.build(ArtifactKind.NARRATIVE, "AAPL", lang="de")
        await coordinator.get_or_compute(KEY, TTL, AsyncMock(return_value=_payload()))
        await coordinator.get_or_compute(risk_key, TTL, AsyncMock(return_value=_payload()))

        count = await coordinator.invalidate("AAPL", [ArtifactKind.NARRATIVE])
        peeked = await coordinator.peek(KEY)

        assert count == 2
        assert peeked.is_stale is True
        assert peeked.status == CacheStatus.STALE

    @pytest.mark.asyncio
    async def test_invalidate_filters_by_kind(self, coordinator):
        await coordinator.get_or_compute(KEY, TTL, AsyncMock(return_value=_payload()))
        assert await coordinator.invalidate("AAPL", [ArtifactKind.NEWS]) == 0

    @pytest.mark.asyncio
    async def test_peek_never_computes(self, coordinator):
        assert await coordinator.peek(KEY) is None

    @pytest.mark.asyncio
    async def test_health_counts_by_kind_and_status(self, coordinator, clock):
        await coordinator.get_or_compute(KEY, TTL, AsyncMock(return_value=_payload()))
        other = CacheKey.build(ArtifactKind.NEWS, "MSFT")
        with pytest.raises(RuntimeError):
            await coordinator.get_or_compute(other, TTL, AsyncMock(side_effect=RuntimeError("x")))

        health = await coordinator.health()

        assert health == {"narrative": {"fresh": 1}, "news": {"error": 1}}

    @pytest.mark.asyncio
    async def test_purge_drops_old_entries(self, coordinator, memory_store, clock):
        await coordinator.get_or_compute(KEY, TTL, AsyncMock(return_value=_payload()))
        clock.advance(days=31)

        removed = await coordinator.purge(timedelta(days=30))

        assert removed == 1
        assert await memory_store.get(KEY) is None

    @pytest.mark.asyncio
    async def test_purge_drops_abandoned_leases(self, coordinator, memory_store, clock):
        await memory_store.claim(KEY, "crashed-worker", clock.now, clock.now + timedelta(minutes=10))
        clock.advance(days=31)

        removed = await coordinator.purge(timedelta(days=30))

        assert removed == 1
        assert await memory_store.get(KEY) is None

    @pytest.mark.asyncio
    async def test_purge_keeps_active_leases(self, coordinator, memory_store, clock):
        await memory_store.claim(KEY, "worker", clock.now, clock.now + timedelta(days=40))
        clock.advance(days=31)

        removed = await coordinator.purge(timedelta(days=30))

        assert removed == 0
        assert (await memory_store.get(KEY)).status == CacheStatus.CALCULATING

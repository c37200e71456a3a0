"""Check-then-compute coordination over the cache entry store.

Usage:
    coordinator = CacheCoordinator(store)

    result = await coordinator.get_or_compute(
        CacheKey.build(ArtifactKind.RISK, "AAPL", days=365),
        ttl=timedelta(hours=6),
        compute_fn=lambda: compute_risk("AAPL"),
    )
    result.value      # validated payload model
    result.is_stale   # True when an older value was served

Per key, at most one caller computes at a time: the store's ``claim`` hands
out a lease and only the lease holder may complete or fail the entry.
Leases expire, so a crashed holder never leaves an entry stuck in
``calculating``.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

from portfolio_analytics.core.config import settings
from portfolio_analytics.core.exceptions import (
    AlreadyCalculating,
    AppException,
    ArtifactUnavailable,
    CorruptPayload,
    InsufficientData,
)
from portfolio_analytics.core.logging import get_logger

from .entries import ArtifactKind, CacheEntry, CacheKey, CacheStatus
from .payloads import decode_payload, encode_payload
from .store import CacheEntryStore


logger = get_logger("cache.coordinator")

T = TypeVar("T", bound=BaseModel)

Clock = Callable[[], datetime]

MAX_ERROR_LENGTH = 1000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CachePolicy:
    """Lease, backoff and waiting behaviour of the coordinator."""

    lease: timedelta = timedelta(minutes=10)
    retry_base: timedelta = timedelta(minutes=1)
    retry_max: timedelta = timedelta(hours=6)
    wait_timeout: float = 5.0
    poll_interval: float = 0.1
    fail_open: bool = True

    @classmethod
    def from_settings(cls) -> CachePolicy:
        return cls(
            lease=timedelta(seconds=settings.cache_lease_seconds),
            retry_base=timedelta(seconds=settings.cache_retry_base_seconds),
            retry_max=timedelta(seconds=settings.cache_retry_max_seconds),
            wait_timeout=settings.cache_wait_timeout,
            poll_interval=settings.cache_poll_interval,
            fail_open=settings.cache_fail_open,
        )

    def backoff(self, retry_count: int) -> timedelta:
        """Wait after the ``retry_count``-th consecutive failure."""
        exponent = max(retry_count - 1, 0)
        seconds = self.retry_base.total_seconds() * (2 ** min(exponent, 32))
        return min(timedelta(seconds=seconds), self.retry_max)


@dataclass(frozen=True)
class CacheResult(Generic[T]):
    """A payload together with how fresh it is."""

    value: T
    status: CacheStatus
    is_stale: bool
    generated_at: datetime | None
    expires_at: datetime | None
    last_error: str | None = None
    computed: bool = False


class CacheCoordinator:
    """Serves artifacts from the cache, computing them at most once per key."""

    def __init__(
        self,
        store: CacheEntryStore,
        policy: CachePolicy | None = None,
        clock: Clock | None = None,
    ):
        self.store = store
        self.policy = policy or CachePolicy.from_settings()
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # Public API
    # =========================================================================

    async def get_or_compute(
        self,
        key: CacheKey,
        ttl: timedelta | float,
        compute_fn: Callable[[], Awaitable[T]],
        *,
        fail_open: Optional[bool] = None,
    ) -> CacheResult[T]:
        """
        Return a fresh artifact, computing it if needed.

        - fresh entry: returned without computing
        - error entry inside its backoff: previous value served as stale
          (fail-open) or ``ArtifactUnavailable``
        - otherwise: claim the entry, compute, store
        - claim lost: wait up to ``wait_timeout`` for the winner, then serve
          the previous value as stale, claim once more if the winner gave
          up, or raise ``AlreadyCalculating``
        """
        ttl = ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)
        fail_open = self.policy.fail_open if fail_open is None else fail_open

        now = self.now()
        entry = await self.store.get(key)
        previous = self._decode(key, entry)

        if entry is not None and entry.is_fresh(now):
            if previous is not None:
                return self._result(entry, previous, now)
            await self.store.expire(key)

        if entry is not None and entry.in_backoff(now):
            return self._serve_backoff(key, entry, previous, now, fail_open)

        token = uuid.uuid4().hex
        claimed = await self.store.claim(key, token, now, now + self.policy.lease)
        if claimed is None:
            served = await self._await_winner(key, previous, fail_open)
            if served is not None:
                return served
            # The winner may have released its lease without storing a value
            now = self.now()
            claimed = await self.store.claim(key, token, now, now + self.policy.lease)
            if claimed is None:
                raise AlreadyCalculating(
                    f"{key.kind.value} for {key.subject} is being calculated",
                    details={"key": str(key)},
                )

        previous = self._decode(key, claimed) or previous
        return await self._compute(key, claimed, token, ttl, compute_fn, previous, fail_open)

    async def peek(self, key: CacheKey) -> CacheResult | None:
        """Current value without computing, or None if nothing valid is stored."""
        entry = await self.store.get(key)
        value = self._decode(key, entry)
        if entry is None or value is None:
            return None
        return self._result(entry, value, self.now())

    async def invalidate(
        self, subject: str | int, kinds: Iterable[ArtifactKind] | None = None
    ) -> int:
        """Mark a subject's entries stale, e.g. after its holdings changed."""
        return await self.store.invalidate(str(subject), kinds)

    async def health(self) -> dict[str, dict[str, int]]:
        return await self.store.status_counts()

    async def purge(self, older_than: timedelta) -> int:
        return await self.store.purge(self.now() - older_than)

    # =========================================================================
    # Internals
    # =========================================================================

    def _decode(self, key: CacheKey, entry: CacheEntry | None) -> BaseModel | None:
        if entry is None or entry.payload is None:
            return None
        try:
            return decode_payload(key.kind, entry.payload)
        except CorruptPayload as e:
            logger.warning(
                f"Discarding invalid cached payload for {key}: {e.message}",
                extra={"cache_key": str(key)},
            )
            return None

    def _result(
        self,
        entry: CacheEntry,
        value: T,
        now: datetime,
        *,
        stale: bool | None = None,
        last_error: str | None = None,
        computed: bool = False,
    ) -> CacheResult[T]:
        status = entry.effective_status(now)
        return CacheResult(
            value=value,
            status=status,
            is_stale=(status != CacheStatus.FRESH) if stale is None else stale,
            generated_at=entry.generated_at,
            expires_at=entry.expires_at,
            last_error=last_error if last_error is not None else entry.last_error,
            computed=computed,
        )

    def _serve_backoff(
        self,
        key: CacheKey,
        entry: CacheEntry,
        previous: BaseModel | None,
        now: datetime,
        fail_open: bool,
    ) -> CacheResult:
        if entry.error_code == InsufficientData.error_code:
            raise InsufficientData(entry.last_error)
        if previous is not None and fail_open:
            return self._result(entry, previous, now, stale=True)
        retry_after = (entry.retry_at - now).total_seconds() if entry.retry_at else 0.0
        raise ArtifactUnavailable(
            f"{key.kind.value} for {key.subject} is unavailable",
            retry_after=retry_after,
            last_error=entry.last_error,
        )

    async def _await_winner(
        self, key: CacheKey, previous: BaseModel | None, fail_open: bool
    ) -> CacheResult | None:
        """Wait for a concurrent computation. None when there is nothing to serve."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.policy.wait_timeout
        entry: CacheEntry | None = None

        while True:
            entry = await self.store.get(key)
            now = self.now()
            if entry is None or not entry.lease_active(now):
                break
            if loop.time() >= deadline:
                break
            await asyncio.sleep(self.policy.poll_interval)

        if entry is not None:
            value = self._decode(key, entry)
            if entry.is_fresh(now) and value is not None:
                return self._result(entry, value, now)
            if entry.in_backoff(now):
                return self._serve_backoff(key, entry, value or previous, now, fail_open)
            previous = value or previous

        if previous is not None:
            logger.info(f"Serving stale {key} while another caller computes it")
            return CacheResult(
                value=previous,
                status=entry.effective_status(now) if entry else CacheStatus.STALE,
                is_stale=True,
                generated_at=entry.generated_at if entry else None,
                expires_at=entry.expires_at if entry else None,
                last_error=entry.last_error if entry else None,
            )
        return None

    async def _compute(
        self,
        key: CacheKey,
        claimed: CacheEntry,
        token: str,
        ttl: timedelta,
        compute_fn: Callable[[], Awaitable[T]],
        previous: BaseModel | None,
        fail_open: bool,
    ) -> CacheResult[T]:
        try:
            value = await compute_fn()
            payload = encode_payload(key.kind, value)
        except asyncio.CancelledError:
            await asyncio.shield(self.store.release(key, token))
            logger.info(f"Computation of {key} cancelled, lease released")
            raise
        except Exception as exc:
            await self._record_failure(key, claimed, token, exc)
            if isinstance(exc, InsufficientData):
                raise
            if fail_open and previous is not None:
                logger.warning(f"Serving stale {key} after failed recomputation: {exc}")
                entry = await self.store.get(key) or claimed
                return self._result(
                    entry, previous, self.now(), stale=True, last_error=_error_message(exc)
                )
            raise

        generated_at = self.now()
        expires_at = generated_at + ttl
        stored = await self.store.complete(key, token, payload, generated_at, expires_at)
        if not stored:
            logger.warning(f"Lease on {key} was lost before completion; result not stored")
        else:
            logger.debug(f"Computed {key}", extra={"cache_key": str(key)})

        return CacheResult(
            value=value,
            status=CacheStatus.FRESH,
            is_stale=False,
            generated_at=generated_at,
            expires_at=expires_at,
            computed=True,
        )

    async def _record_failure(
        self, key: CacheKey, claimed: CacheEntry, token: str, exc: Exception
    ) -> None:
        now = self.now()
        retry_count = claimed.retry_count + 1
        retry_at = now + self.policy.backoff(retry_count)
        error_code = exc.error_code if isinstance(exc, AppException) else "COMPUTE_ERROR"
        recorded = await self.store.fail(
            key, token, _error_message(exc), error_code, retry_at
        )
        log = logger.info if isinstance(exc, InsufficientData) else logger.warning
        log(
            f"Computation of {key} failed ({error_code}), attempt {retry_count}, "
            f"retry after {retry_at.isoformat()}: {exc}",
            extra={"cache_key": str(key), "error_code": error_code, "recorded": recorded},
        )


def _error_message(exc: Exception) -> str:
    message = exc.message if isinstance(exc, AppException) else str(exc)
    return (message or type(exc).__name__)[:MAX_ERROR_LENGTH]

"""
Per-ticker failure tracking for upstream price providers.

A ticker that failed to fetch is not retried until its ``retry_after``
passes. Each further failure pushes ``retry_after`` out exponentially:

    not_found      fixed delay (the symbol most likely does not exist)
    rate_limited   base x 2^min(previous_failures, cap), capped at max interval
    api_error      base x 2^min(previous_failures, cap), capped at max interval

A success deletes the record, leaving no residual penalty.

Usage:
    tracker = ProviderFailureTracker(MemoryFailureStore())

    if await tracker.should_attempt("AAPL"):
        try:
            data = await fetch("AAPL")
        except ProviderError as e:
            await tracker.record_failure("AAPL", e.failure_type, e.message)
        else:
            await tracker.record_success("AAPL")
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum

from portfolio_analytics.core.config import settings
from portfolio_analytics.core.logging import get_logger


logger = get_logger("services.failure_tracker")

MAX_MESSAGE_LENGTH = 500


class FailureType(str, Enum):
    """Why an upstream fetch failed."""
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    API_ERROR = "api_error"


class ProviderError(Exception):
    """Raised by fetchers with the failure already classified."""

    def __init__(self, failure_type: FailureType, message: str):
        self.failure_type = FailureType(failure_type)
        self.message = message
        super().__init__(f"{self.failure_type.value}: {message}")


@dataclass(frozen=True)
class ProviderFailureRecord:
    ticker: str
    failure_type: FailureType
    consecutive_failures: int
    retry_after: datetime
    last_attempt_at: datetime
    error_message: str | None = None


@dataclass(frozen=True)
class BackoffPolicy:
    """Delays are measured from the failed attempt."""

    not_found_delay: timedelta = timedelta(hours=24)
    rate_limited_base: timedelta = timedelta(hours=1)
    api_error_base: timedelta = timedelta(hours=6)
    exponent_cap: int = 6
    max_interval: timedelta = timedelta(hours=24)

    @classmethod
    def from_settings(cls) -> BackoffPolicy:
        return cls(
            not_found_delay=timedelta(hours=settings.provider_not_found_delay_hours),
            rate_limited_base=timedelta(hours=settings.provider_rate_limited_delay_hours),
            api_error_base=timedelta(hours=settings.provider_api_error_delay_hours),
            exponent_cap=settings.provider_backoff_exponent_cap,
            max_interval=timedelta(hours=settings.provider_max_interval_hours),
        )

    def delay(self, failure_type: FailureType, previous_failures: int) -> timedelta:
        """Wait before the next attempt, given failures recorded before this one."""
        if failure_type == FailureType.NOT_FOUND:
            return self.not_found_delay
        base = (
            self.rate_limited_base
            if failure_type == FailureType.RATE_LIMITED
            else self.api_error_base
        )
        exponent = min(max(previous_failures, 0), self.exponent_cap)
        return min(base * (2 ** exponent), self.max_interval)


# =============================================================================
# Storage
# =============================================================================


class FailureStore(ABC):
    """Persistence for failure records, keyed by upper-case ticker."""

    @abstractmethod
    async def get(self, ticker: str) -> ProviderFailureRecord | None:
        ...

    @abstractmethod
    async def record_failure(
        self,
        ticker: str,
        failure_type: FailureType,
        message: str,
        now: datetime,
        policy: BackoffPolicy,
    ) -> ProviderFailureRecord:
        """Increment the failure count and push ``retry_after`` out, atomically."""

    @abstractmethod
    async def delete(self, ticker: str) -> bool:
        ...

    @abstractmethod
    async def delete_expired(self, cutoff: datetime) -> int:
        """Delete records whose ``retry_after`` is before ``cutoff``."""

    @abstractmethod
    async def list_active(self, now: datetime) -> list[ProviderFailureRecord]:
        """Records still blocking fetches at ``now``."""


def next_record(
    current: ProviderFailureRecord | None,
    ticker: str,
    failure_type: FailureType,
    message: str,
    now: datetime,
    policy: BackoffPolicy,
) -> ProviderFailureRecord:
    """The record after one more failure."""
    previous = current.consecutive_failures if current else 0
    delay = policy.delay(failure_type, previous)
    if delay <= timedelta(0):
        delay = timedelta(seconds=1)
    return ProviderFailureRecord(
        ticker=ticker,
        failure_type=failure_type,
        consecutive_failures=previous + 1,
        retry_after=now + delay,
        last_attempt_at=now,
        error_message=message[:MAX_MESSAGE_LENGTH] if message else None,
    )


class MemoryFailureStore(FailureStore):
    """In-process failure store."""

    def __init__(self) -> None:
        self._records: dict[str, ProviderFailureRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, ticker: str) -> ProviderFailureRecord | None:
        return self._records.get(ticker)

    async def record_failure(self, ticker, failure_type, message, now, policy):
        async with self._lock:
            record = next_record(
                self._records.get(ticker), ticker, failure_type, message, now, policy
            )
            self._records[ticker] = record
            return record

    async def delete(self, ticker: str) -> bool:
        async with self._lock:
            return self._records.pop(ticker, None) is not None

    async def delete_expired(self, cutoff: datetime) -> int:
        async with self._lock:
            doomed = [t for t, r in self._records.items() if r.retry_after < cutoff]
            for ticker in doomed:
                del self._records[ticker]
            return len(doomed)

    async def list_active(self, now: datetime) -> list[ProviderFailureRecord]:
        return sorted(
            (r for r in self._records.values() if r.retry_after > now),
            key=lambda r: r.retry_after,
        )

    def put(self, record: ProviderFailureRecord) -> None:
        """Seed a record directly."""
        self._records[record.ticker] = replace(record, ticker=record.ticker.upper())


# =============================================================================
# Tracker
# =============================================================================


class ProviderFailureTracker:
    """Gates upstream fetches per ticker."""

    def __init__(
        self,
        store: FailureStore,
        policy: BackoffPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.policy = policy or BackoffPolicy.from_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def should_attempt(self, ticker: str) -> bool:
        record = await self.store.get(_normalize(ticker))
        return record is None or self._clock() >= record.retry_after

    async def get_record(self, ticker: str) -> ProviderFailureRecord | None:
        return await self.store.get(_normalize(ticker))

    async def record_failure(
        self, ticker: str, kind: FailureType | str, message: str = ""
    ) -> ProviderFailureRecord:
        record = await self.store.record_failure(
            _normalize(ticker), FailureType(kind), message, self._clock(), self.policy
        )
        logger.warning(
            f"Fetch failed for {record.ticker} ({record.failure_type.value}, "
            f"{record.consecutive_failures} in a row), next attempt after "
            f"{record.retry_after.isoformat()}"
        )
        return record

    async def record_success(self, ticker: str) -> None:
        if await self.store.delete(_normalize(ticker)):
            logger.info(f"Cleared fetch failures for {_normalize(ticker)}")

    async def sweep(self, grace: timedelta | None = None) -> int:
        """Delete records whose ``retry_after`` lies more than ``grace`` in the past."""
        if grace is None:
            grace = timedelta(hours=settings.provider_sweep_grace_hours)
        removed = await self.store.delete_expired(self._clock() - grace)
        if removed:
            logger.info(f"Swept {removed} expired fetch failure records")
        return removed

    async def active_failures(self) -> list[ProviderFailureRecord]:
        return await self.store.list_active(self._clock())


def _normalize(ticker: str) -> str:
    return ticker.strip().upper()

"""Keyed, status-tracked storage for cache entries.

Every state change goes through a conditional transition so that, per key,
transitions are linearizable:

    claim      stale | expired fresh | lapsed calculating | error past backoff
               -> calculating (new lease token)
    complete   calculating (matching token) -> fresh, retry_count = 0
    fail       calculating (matching token) -> error, retry_count += 1
    release    calculating (matching token) -> stale

``complete`` and ``fail`` only succeed for the current lease holder, so a
holder whose lease lapsed and was reclaimed cannot overwrite the new result.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from portfolio_analytics.core.logging import get_logger

from .entries import ArtifactKind, CacheEntry, CacheKey, CacheStatus


logger = get_logger("cache.store")


class CacheEntryStore(ABC):
    """Storage backend for cache entries."""

    @abstractmethod
    async def get(self, key: CacheKey) -> CacheEntry | None:
        """Return the entry for ``key`` or None if it was never referenced."""

    @abstractmethod
    async def claim(
        self, key: CacheKey, token: str, now: datetime, lease_expires_at: datetime
    ) -> CacheEntry | None:
        """Move the entry into ``calculating`` under ``token``.

        Creates a ``stale`` entry first if none exists. Returns the claimed
        entry (with any previous payload) or None if the entry is not
        claimable.
        """

    @abstractmethod
    async def complete(
        self,
        key: CacheKey,
        token: str,
        payload: dict[str, Any],
        generated_at: datetime,
        expires_at: datetime,
    ) -> bool:
        """Store a computed payload. Only the lease holder may complete."""

    @abstractmethod
    async def fail(
        self,
        key: CacheKey,
        token: str,
        message: str,
        error_code: str,
        retry_at: datetime,
    ) -> bool:
        """Record a failed computation. Only the lease holder may fail."""

    @abstractmethod
    async def release(self, key: CacheKey, token: str) -> bool:
        """Give up a lease without a result (the entry becomes stale)."""

    @abstractmethod
    async def expire(self, key: CacheKey) -> bool:
        """Mark a fresh entry stale so it can be recomputed."""

    @abstractmethod
    async def invalidate(
        self, subject: str, kinds: Iterable[ArtifactKind] | None = None
    ) -> int:
        """Mark every non-calculating entry of ``subject`` stale."""

    @abstractmethod
    async def status_counts(self) -> dict[str, dict[str, int]]:
        """Entry counts per artifact kind and status."""

    @abstractmethod
    async def purge(self, cutoff: datetime) -> int:
        """Delete entries last touched, or leases lapsed, before ``cutoff``."""


class MemoryCacheEntryStore(CacheEntryStore):
    """In-process store. One lock serializes all transitions."""

    def __init__(self) -> None:
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: CacheKey) -> CacheEntry | None:
        async with self._lock:
            entry = self._entries.get(key)
            return entry.copy() if entry else None

    async def claim(
        self, key: CacheKey, token: str, now: datetime, lease_expires_at: datetime
    ) -> CacheEntry | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = CacheEntry(key=key)
                self._entries[key] = entry
            if not entry.claimable(now):
                return None
            entry.status = CacheStatus.CALCULATING
            entry.lease_token = token
            entry.lease_expires_at = lease_expires_at
            entry.last_attempt_at = now
            return entry.copy()

    def _held(self, key: CacheKey, token: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if (
            entry is None
            or entry.status != CacheStatus.CALCULATING
            or entry.lease_token != token
        ):
            return None
        return entry

    async def complete(
        self,
        key: CacheKey,
        token: str,
        payload: dict[str, Any],
        generated_at: datetime,
        expires_at: datetime,
    ) -> bool:
        async with self._lock:
            entry = self._held(key, token)
            if entry is None:
                return False
            entry.status = CacheStatus.FRESH
            entry.payload = dict(payload)
            entry.generated_at = generated_at
            entry.expires_at = expires_at
            entry.retry_count = 0
            entry.last_error = None
            entry.error_code = None
            entry.retry_at = None
            entry.lease_token = None
            entry.lease_expires_at = None
            return True

    async def fail(
        self,
        key: CacheKey,
        token: str,
        message: str,
        error_code: str,
        retry_at: datetime,
    ) -> bool:
        async with self._lock:
            entry = self._held(key, token)
            if entry is None:
                return False
            entry.status = CacheStatus.ERROR
            entry.retry_count += 1
            entry.last_error = message
            entry.error_code = error_code
            entry.retry_at = retry_at
            entry.lease_token = None
            entry.lease_expires_at = None
            return True

    async def release(self, key: CacheKey, token: str) -> bool:
        async with self._lock:
            entry = self._held(key, token)
            if entry is None:
                return False
            entry.status = CacheStatus.STALE
            entry.lease_token = None
            entry.lease_expires_at = None
            return True

    async def expire(self, key: CacheKey) -> bool:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.status != CacheStatus.FRESH:
                return False
            entry.status = CacheStatus.STALE
            return True

    async def invalidate(
        self, subject: str, kinds: Iterable[ArtifactKind] | None = None
    ) -> int:
        wanted = set(kinds) if kinds is not None else None
        count = 0
        async with self._lock:
            for key, entry in self._entries.items():
                if key.subject != str(subject):
                    continue
                if wanted is not None and key.kind not in wanted:
                    continue
                if entry.status in (CacheStatus.FRESH, CacheStatus.ERROR):
                    entry.status = CacheStatus.STALE
                    entry.retry_at = None
                    count += 1
        return count

    async def status_counts(self) -> dict[str, dict[str, int]]:
        async with self._lock:
            counts: dict[str, Counter] = {}
            for key, entry in self._entries.items():
                counts.setdefault(key.kind.value, Counter())[entry.status.value] += 1
        return {kind: dict(counter) for kind, counter in counts.items()}

    async def purge(self, cutoff: datetime) -> int:
        async with self._lock:
            doomed = [key for key, entry in self._entries.items() if _purgeable(entry, cutoff)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.info(f"Purged {len(doomed)} cache entries")
        return len(doomed)

    def snapshot(self) -> list[CacheEntry]:
        """Copies of all entries, for inspection."""
        return [entry.copy() for entry in self._entries.values()]


def _last_touched(entry: CacheEntry) -> datetime | None:
    candidates = [t for t in (entry.expires_at, entry.last_attempt_at) if t is not None]
    return max(candidates) if candidates else None


def _purgeable(entry: CacheEntry, cutoff: datetime) -> bool:
    if entry.status == CacheStatus.CALCULATING:
        return entry.lease_expires_at is not None and entry.lease_expires_at < cutoff
    touched = _last_touched(entry)
    return touched is not None and touched < cutoff

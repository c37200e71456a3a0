"""Cache keys and entry state for computed artifacts."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class CacheStatus(str, Enum):
    """Lifecycle state of a cache entry."""
    FRESH = "fresh"
    STALE = "stale"
    CALCULATING = "calculating"
    ERROR = "error"


class ArtifactKind(str, Enum):
    """Kind of computed artifact. Each kind is stored separately."""
    RISK = "risk"
    PORTFOLIO_RISK = "portfolio_risk"
    CORRELATIONS = "correlations"
    VOLATILITY_FORECAST = "volatility_forecast"
    REGIME_FORECAST = "regime_forecast"
    NARRATIVE = "narrative"
    NEWS = "news"
    SENTIMENT = "sentiment"


def _format_param(value: Any) -> str:
    if isinstance(value, float):
        return repr(round(value, 8))
    if isinstance(value, Enum):
        return str(value.value)
    if value is None:
        return ""
    return str(value)


@dataclass(frozen=True)
class CacheKey:
    """Composite identity of a cache entry: artifact kind, subject and parameters."""

    kind: ArtifactKind
    subject: str
    params: tuple[tuple[str, str], ...] = ()

    @classmethod
    def build(cls, kind: ArtifactKind, subject: str | int, **params: Any) -> CacheKey:
        """Build a key with parameters in canonical (sorted, stringified) form."""
        normalized = tuple(
            sorted((name, _format_param(value)) for name, value in params.items())
        )
        return cls(kind=ArtifactKind(kind), subject=str(subject), params=normalized)

    @property
    def params_key(self) -> str:
        return ",".join(f"{name}={value}" for name, value in self.params)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.subject}:{self.params_key}"


@dataclass
class CacheEntry:
    """Stored state of one cache key.

    ``payload`` is the serialized artifact envelope. ``retry_at`` is the end of
    the backoff window after a failure; ``lease_token``/``lease_expires_at``
    identify the current calculating claim.
    """

    key: CacheKey
    status: CacheStatus = CacheStatus.STALE
    payload: dict[str, Any] | None = None
    generated_at: datetime | None = None
    expires_at: datetime | None = None
    retry_count: int = 0
    last_error: str | None = None
    error_code: str | None = None
    last_attempt_at: datetime | None = None
    retry_at: datetime | None = None
    lease_token: str | None = None
    lease_expires_at: datetime | None = None

    def effective_status(self, now: datetime) -> CacheStatus:
        """Status as seen at ``now``: expiry and lapsed leases read as stale."""
        if self.status == CacheStatus.FRESH and (
            self.expires_at is None or now >= self.expires_at
        ):
            return CacheStatus.STALE
        if self.status == CacheStatus.CALCULATING and not self.lease_active(now):
            return CacheStatus.STALE
        return self.status

    def is_fresh(self, now: datetime) -> bool:
        return self.effective_status(now) == CacheStatus.FRESH

    def lease_active(self, now: datetime) -> bool:
        return (
            self.status == CacheStatus.CALCULATING
            and self.lease_expires_at is not None
            and now < self.lease_expires_at
        )

    def in_backoff(self, now: datetime) -> bool:
        return (
            self.status == CacheStatus.ERROR
            and self.retry_at is not None
            and now < self.retry_at
        )

    def claimable(self, now: datetime) -> bool:
        """Whether a new calculating lease may be granted at ``now``."""
        if self.status == CacheStatus.STALE:
            return True
        if self.status == CacheStatus.FRESH:
            return self.expires_at is None or now >= self.expires_at
        if self.status == CacheStatus.CALCULATING:
            return not self.lease_active(now)
        return not self.in_backoff(now)

    def copy(self) -> CacheEntry:
        return dataclasses.replace(
            self, payload=dict(self.payload) if self.payload is not None else None
        )

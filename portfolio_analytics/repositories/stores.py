"""Storage interfaces consumed by the analytics service and scheduler.

Each interface has a SQL implementation in the matching ``*_orm`` module and
an in-memory implementation here, used when ``storage_backend=memory``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime

import pandas as pd

from portfolio_analytics.core.exceptions import NoData
from portfolio_analytics.quant_engine.hmm import HmmModel


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class Holding:
    """A portfolio's position in one ticker."""
    ticker: str
    quantity: float
    avg_cost: float | None = None


@dataclass(frozen=True)
class RiskSnapshotRecord:
    """Point-in-time risk metrics for a portfolio or a position."""
    subject_type: str
    subject: str
    snapshot_date: date
    volatility: float
    max_drawdown: float
    beta: float | None
    sharpe_ratio: float | None
    var_95: float
    var_99: float
    es_95: float
    es_99: float
    risk_score: float | None = None


@dataclass(frozen=True)
class JobConfigRecord:
    job_name: str
    schedule: str
    enabled: bool = True
    max_duration_minutes: int = 30
    description: str | None = None
    last_run: datetime | None = None
    next_run: datetime | None = None


@dataclass(frozen=True)
class JobRunRecord:
    id: int
    job_name: str
    started_at: datetime
    status: str = "running"
    completed_at: datetime | None = None
    items_processed: int = 0
    items_failed: int = 0
    duration_ms: int | None = None
    message: str | None = None
    error_message: str | None = None


# =============================================================================
# Interfaces
# =============================================================================


class TimeSeriesStore(ABC):
    """Daily closes per ticker."""

    @abstractmethod
    async def get_closes(self, ticker: str, start: date, end: date) -> pd.Series:
        """Closes indexed by date, ascending. Raises ``NoData`` for unknown tickers."""

    @abstractmethod
    async def latest_date(self, ticker: str) -> date | None:
        ...

    @abstractmethod
    async def upsert_closes(self, ticker: str, closes: pd.Series) -> int:
        ...

    async def get_returns(self, subject: str, start: date, end: date) -> pd.Series:
        """Daily simple returns, ordered by date."""
        closes = await self.get_closes(subject, start, end)
        return closes.pct_change().dropna()


class PortfolioStore(ABC):
    """Read-only view of portfolios and their holdings."""

    @abstractmethod
    async def list_portfolio_ids(self) -> list[int]:
        ...

    @abstractmethod
    async def get_holdings(self, portfolio_id: int) -> list[Holding]:
        """Holdings of an active portfolio. Raises ``NoData`` if it does not exist."""

    @abstractmethod
    async def held_tickers(self) -> list[str]:
        """Distinct tickers across active portfolios."""


class HmmModelStore(ABC):
    """Append-only model versions."""

    @abstractmethod
    async def save(self, model: HmmModel) -> HmmModel:
        """Persist a new version and return it with its id."""

    @abstractmethod
    async def latest(self, market: str) -> HmmModel | None:
        ...


class SnapshotStore(ABC):
    """Immutable daily risk snapshots, one per subject and date."""

    @abstractmethod
    async def save(self, snapshot: RiskSnapshotRecord) -> bool:
        """Insert unless a snapshot exists for the same subject and date."""

    @abstractmethod
    async def get(
        self, subject_type: str, subject: str, snapshot_date: date
    ) -> RiskSnapshotRecord | None:
        ...


class JobConfigStore(ABC):

    @abstractmethod
    async def seed(self, configs: Iterable[JobConfigRecord]) -> None:
        """Insert missing configs; existing rows keep their settings."""

    @abstractmethod
    async def get(self, job_name: str) -> JobConfigRecord | None:
        ...

    @abstractmethod
    async def list(self) -> list[JobConfigRecord]:
        ...

    @abstractmethod
    async def update(self, job_name: str, **changes) -> JobConfigRecord | None:
        ...


class JobRunStore(ABC):

    @abstractmethod
    async def start(self, job_name: str, started_at: datetime, status: str = "running") -> int:
        ...

    @abstractmethod
    async def finish(
        self,
        run_id: int,
        status: str,
        completed_at: datetime,
        items_processed: int = 0,
        items_failed: int = 0,
        message: str | None = None,
        error_message: str | None = None,
    ) -> None:
        ...

    @abstractmethod
    async def recent(self, job_name: str | None = None, limit: int = 20) -> list[JobRunRecord]:
        ...

    @abstractmethod
    async def purge(self, cutoff: datetime) -> int:
        ...


# =============================================================================
# In-memory implementations
# =============================================================================


class MemoryTimeSeriesStore(TimeSeriesStore):

    def __init__(self, closes: dict[str, pd.Series] | None = None):
        self._closes: dict[str, pd.Series] = {}
        for ticker, series in (closes or {}).items():
            self._closes[ticker.upper()] = _normalize_closes(series)

    async def get_closes(self, ticker: str, start: date, end: date) -> pd.Series:
        series = self._closes.get(ticker.upper())
        if series is None:
            raise NoData(f"No price history for {ticker.upper()}")
        window = series[(series.index >= pd.Timestamp(start)) & (series.index <= pd.Timestamp(end))]
        return window.copy()

    async def latest_date(self, ticker: str) -> date | None:
        series = self._closes.get(ticker.upper())
        if series is None or series.empty:
            return None
        return series.index[-1].date()

    async def upsert_closes(self, ticker: str, closes: pd.Series) -> int:
        incoming = _normalize_closes(closes)
        current = self._closes.get(ticker.upper())
        if current is not None:
            incoming = incoming.combine_first(current)
        self._closes[ticker.upper()] = incoming.sort_index()
        return len(closes)


class MemoryPortfolioStore(PortfolioStore):

    def __init__(self, portfolios: dict[int, Sequence[Holding]] | None = None):
        self._portfolios = {pid: list(h) for pid, h in (portfolios or {}).items()}

    async def list_portfolio_ids(self) -> list[int]:
        return sorted(self._portfolios)

    async def get_holdings(self, portfolio_id: int) -> list[Holding]:
        if portfolio_id not in self._portfolios:
            raise NoData(f"Portfolio {portfolio_id} not found")
        return list(self._portfolios[portfolio_id])

    async def held_tickers(self) -> list[str]:
        return sorted(
            {h.ticker.upper() for holdings in self._portfolios.values() for h in holdings}
        )


class MemoryHmmModelStore(HmmModelStore):

    def __init__(self) -> None:
        self._models: list[HmmModel] = []
        self._ids = itertools.count(1)

    async def save(self, model: HmmModel) -> HmmModel:
        stored = dataclasses.replace(model, id=next(self._ids))
        self._models.append(stored)
        return stored

    async def latest(self, market: str) -> HmmModel | None:
        candidates = [m for m in self._models if m.market == market]
        return max(candidates, key=lambda m: (m.trained_at, m.id or 0), default=None)


class MemorySnapshotStore(SnapshotStore):

    def __init__(self) -> None:
        self._rows: dict[tuple[str, str, date], RiskSnapshotRecord] = {}

    async def save(self, snapshot: RiskSnapshotRecord) -> bool:
        key = (snapshot.subject_type, snapshot.subject, snapshot.snapshot_date)
        if key in self._rows:
            return False
        self._rows[key] = snapshot
        return True

    async def get(self, subject_type, subject, snapshot_date):
        return self._rows.get((subject_type, subject, snapshot_date))


class MemoryJobConfigStore(JobConfigStore):

    def __init__(self) -> None:
        self._configs: dict[str, JobConfigRecord] = {}

    async def seed(self, configs: Iterable[JobConfigRecord]) -> None:
        for config in configs:
            self._configs.setdefault(config.job_name, config)

    async def get(self, job_name: str) -> JobConfigRecord | None:
        return self._configs.get(job_name)

    async def list(self) -> list[JobConfigRecord]:
        return [self._configs[name] for name in sorted(self._configs)]

    async def update(self, job_name: str, **changes) -> JobConfigRecord | None:
        current = self._configs.get(job_name)
        if current is None:
            return None
        updated = dataclasses.replace(current, **changes)
        self._configs[job_name] = updated
        return updated


class MemoryJobRunStore(JobRunStore):

    def __init__(self) -> None:
        self._runs: dict[int, JobRunRecord] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def start(self, job_name: str, started_at: datetime, status: str = "running") -> int:
        async with self._lock:
            run_id = next(self._ids)
            self._runs[run_id] = JobRunRecord(
                id=run_id, job_name=job_name, started_at=started_at, status=status
            )
            return run_id

    async def finish(
        self,
        run_id,
        status,
        completed_at,
        items_processed=0,
        items_failed=0,
        message=None,
        error_message=None,
    ) -> None:
        async with self._lock:
            run = self._runs[run_id]
            self._runs[run_id] = dataclasses.replace(
                run,
                status=status,
                completed_at=completed_at,
                items_processed=items_processed,
                items_failed=items_failed,
                duration_ms=int((completed_at - run.started_at).total_seconds() * 1000),
                message=message,
                error_message=error_message,
            )

    async def recent(self, job_name: str | None = None, limit: int = 20) -> list[JobRunRecord]:
        runs = [r for r in self._runs.values() if job_name is None or r.job_name == job_name]
        runs.sort(key=lambda r: (r.started_at, r.id), reverse=True)
        return runs[:limit]

    async def purge(self, cutoff: datetime) -> int:
        async with self._lock:
            doomed = [
                run_id
                for run_id, run in self._runs.items()
                if run.status != "running" and run.started_at < cutoff
            ]
            for run_id in doomed:
                del self._runs[run_id]
            return len(doomed)


def _normalize_closes(series: pd.Series) -> pd.Series:
    index = pd.DatetimeIndex(series.index)
    if index.tz is not None:
        index = index.tz_localize(None)
    normalized = pd.Series(series.to_numpy(dtype=float), index=index.normalize())
    return normalized[~normalized.index.duplicated(keep="last")].sort_index()

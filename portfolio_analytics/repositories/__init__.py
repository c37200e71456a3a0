"""Repositories and storage interfaces.

SQL implementations live in the ``*_orm`` modules and are imported by the
service factories only when ``storage_backend=database``.
"""

from .stores import (
    Holding,
    HmmModelStore,
    JobConfigRecord,
    JobConfigStore,
    JobRunRecord,
    JobRunStore,
    MemoryHmmModelStore,
    MemoryJobConfigStore,
    MemoryJobRunStore,
    MemoryPortfolioStore,
    MemorySnapshotStore,
    MemoryTimeSeriesStore,
    PortfolioStore,
    RiskSnapshotRecord,
    SnapshotStore,
    TimeSeriesStore,
)


__all__ = [
    "Holding",
    "HmmModelStore",
    "JobConfigRecord",
    "JobConfigStore",
    "JobRunRecord",
    "JobRunStore",
    "MemoryHmmModelStore",
    "MemoryJobConfigStore",
    "MemoryJobRunStore",
    "MemoryPortfolioStore",
    "MemorySnapshotStore",
    "MemoryTimeSeriesStore",
    "PortfolioStore",
    "RiskSnapshotRecord",
    "SnapshotStore",
    "TimeSeriesStore",
]

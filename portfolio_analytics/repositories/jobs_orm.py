"""Job configuration and run history repository using SQLAlchemy ORM.

Usage:
    from portfolio_analytics.repositories.jobs_orm import SqlJobConfigStore, SqlJobRunStore

    configs = SqlJobConfigStore()
    await configs.seed(defaults)
    config = await configs.get("warm_caches")
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert

from portfolio_analytics.core.logging import get_logger
from portfolio_analytics.database.connection import get_session
from portfolio_analytics.database.orm import JobConfig, JobRun

from .stores import JobConfigRecord, JobConfigStore, JobRunRecord, JobRunStore


logger = get_logger("repositories.jobs_orm")

MAX_MESSAGE_LENGTH = 2000


def _config_from_orm(row: JobConfig) -> JobConfigRecord:
    return JobConfigRecord(
        job_name=row.job_name,
        schedule=row.schedule,
        enabled=row.enabled,
        max_duration_minutes=row.max_duration_minutes,
        description=row.description,
        last_run=row.last_run,
        next_run=row.next_run,
    )


def _run_from_orm(row: JobRun) -> JobRunRecord:
    return JobRunRecord(
        id=row.id,
        job_name=row.job_name,
        started_at=row.started_at,
        status=row.status,
        completed_at=row.completed_at,
        items_processed=row.items_processed,
        items_failed=row.items_failed,
        duration_ms=row.duration_ms,
        message=row.message,
        error_message=row.error_message,
    )


class SqlJobConfigStore(JobConfigStore):

    async def seed(self, configs: Iterable[JobConfigRecord]) -> None:
        rows = [
            {
                "job_name": c.job_name,
                "schedule": c.schedule,
                "enabled": c.enabled,
                "max_duration_minutes": c.max_duration_minutes,
                "description": c.description,
            }
            for c in configs
        ]
        if not rows:
            return
        async with get_session() as session:
            stmt = insert(JobConfig).values(rows).on_conflict_do_nothing(
                index_elements=["job_name"]
            )
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount:
            logger.info(f"Seeded {result.rowcount} job configs")

    async def get(self, job_name: str) -> JobConfigRecord | None:
        async with get_session() as session:
            row = await session.get(JobConfig, job_name)
            return _config_from_orm(row) if row else None

    async def list(self) -> list[JobConfigRecord]:
        async with get_session() as session:
            result = await session.execute(select(JobConfig).order_by(JobConfig.job_name))
            return [_config_from_orm(row) for row in result.scalars().all()]

    async def update(self, job_name: str, **changes) -> JobConfigRecord | None:
        async with get_session() as session:
            result = await session.execute(
                update(JobConfig)
                .where(JobConfig.job_name == job_name)
                .values(**changes)
                .returning(JobConfig)
            )
            row = result.scalar_one_or_none()
            await session.commit()
            return _config_from_orm(row) if row else None


class SqlJobRunStore(JobRunStore):

    async def start(self, job_name: str, started_at: datetime, status: str = "running") -> int:
        async with get_session() as session:
            run = JobRun(job_name=job_name, started_at=started_at, status=status)
            session.add(run)
            await session.commit()
            await session.refresh(run)
            return run.id

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
        async with get_session() as session:
            run = await session.get(JobRun, run_id)
            if run is None:
                logger.warning(f"Job run {run_id} vanished before completion")
                return
            run.status = status
            run.completed_at = completed_at
            run.items_processed = items_processed
            run.items_failed = items_failed
            run.duration_ms = int((completed_at - run.started_at).total_seconds() * 1000)
            run.message = message[:MAX_MESSAGE_LENGTH] if message else None
            run.error_message = error_message[:MAX_MESSAGE_LENGTH] if error_message else None
            await session.commit()

    async def recent(self, job_name: str | None = None, limit: int = 20) -> list[JobRunRecord]:
        query = select(JobRun).order_by(JobRun.started_at.desc(), JobRun.id.desc()).limit(limit)
        if job_name is not None:
            query = query.where(JobRun.job_name == job_name)
        async with get_session() as session:
            result = await session.execute(query)
            return [_run_from_orm(row) for row in result.scalars().all()]

    async def purge(self, cutoff: datetime) -> int:
        async with get_session() as session:
            result = await session.execute(
                delete(JobRun).where(JobRun.started_at < cutoff, JobRun.status != "running")
            )
            await session.commit()
            return result.rowcount or 0

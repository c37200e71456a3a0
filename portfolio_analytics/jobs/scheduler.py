"""Job scheduler using APScheduler with async support.

Schedules are six-field cron expressions (second minute hour day-of-month
month day-of-week). On every trigger the scheduler re-reads the job's
config, skips disabled or still-running jobs, runs the job under a deadline
and records a ``JobRun``.

Deadlines are cooperative first: the job's :class:`CancellationToken` is
set and the job is expected to stop at its next ``ctx.check_cancelled()``.
A job that ignores the signal for ``cancel_grace`` seconds has its task
cancelled.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from redis.exceptions import RedisError

from portfolio_analytics.cache.distributed_lock import DistributedLock
from portfolio_analytics.core.config import settings
from portfolio_analytics.core.exceptions import JobCancelled, NotFoundError, ValidationError
from portfolio_analytics.core.logging import get_logger
from portfolio_analytics.repositories.stores import (
    JobConfigRecord,
    JobConfigStore,
    JobRunRecord,
    JobRunStore,
    MemoryJobConfigStore,
    MemoryJobRunStore,
)

from .registry import JobDefinition, get_all_jobs


logger = get_logger("jobs.scheduler")

# Global scheduler instance
_scheduler: Optional["JobScheduler"] = None

_CRON_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


# =============================================================================
# Cron parsing
# =============================================================================


def _weekday_names(token: str) -> str:
    """Translate cron day-of-week numbers (0 and 7 = Sunday) to names.

    APScheduler numbers weekdays from Monday, so numeric values are always
    expanded to names.
    """
    token = token.lower()
    if token in ("*", "?"):
        return "*"

    parts = []
    for part in token.split(","):
        spec, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if spec == "*":
            spec = "0-6"
        first, _, last = spec.partition("-")
        if not first.isdigit() or (last and not last.isdigit()):
            if step_text:
                raise ValueError(f"Steps need numeric day-of-week ranges: {part!r}")
            parts.append(spec)
            continue
        start = int(first)
        end = int(last) if last else (6 if step_text else start)
        if not (0 <= start <= 7 and 0 <= end <= 7) or end < start:
            raise ValueError(f"Invalid day-of-week: {part!r}")
        parts.extend(_CRON_WEEKDAYS[d] for d in range(start, end + 1, step))

    unique = list(dict.fromkeys(parts))
    return ",".join(unique)


def parse_cron(expression: str, timezone: Any = None) -> CronTrigger:
    """
    Build a trigger from ``"sec min hour dom mon dow"``.

    Raises:
        ValueError: wrong field count or an invalid field
    """
    fields = expression.split()
    if len(fields) != 6:
        raise ValueError(
            f"Expected 6 cron fields (sec min hour dom mon dow), got {len(fields)}: {expression!r}"
        )
    second, minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        second=second,
        minute=minute,
        hour=hour,
        day="*" if day == "?" else day,
        month=month.lower(),
        day_of_week=_weekday_names(day_of_week),
        timezone=timezone or settings.scheduler_timezone,
    )


# =============================================================================
# Job context
# =============================================================================


class CancellationToken:
    """Cooperative cancellation signal handed to a running job."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled(f"Job cancelled: {self.reason}")

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class JobContext:
    """What a running job sees: its name, cancellation token and counters."""
    name: str
    token: CancellationToken
    started_at: datetime
    runs: JobRunStore | None = None
    items_processed: int = 0
    items_failed: int = 0
    errors: list[str] = field(default_factory=list)

    def check_cancelled(self) -> None:
        """Call between major steps; raises ``JobCancelled`` after the deadline."""
        self.token.raise_if_cancelled()

    def succeeded(self, count: int = 1) -> None:
        self.items_processed += count

    def failed(self, item: Any, error: Exception | str) -> None:
        self.items_failed += 1
        message = getattr(error, "message", None) or str(error)
        self.errors.append(f"{item}: {message}")
        logger.warning(f"Job {self.name}: {item} failed: {message}")


# =============================================================================
# Scheduler
# =============================================================================


class JobScheduler:
    """Background job scheduler with overlap prevention and deadlines."""

    def __init__(
        self,
        config_store: JobConfigStore,
        run_store: JobRunStore,
        jobs: Mapping[str, JobDefinition] | None = None,
        distributed_lock: bool | None = None,
        cancel_grace: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config_store = config_store
        self.run_store = run_store
        self._jobs = dict(jobs) if jobs is not None else None
        self.distributed_lock = (
            settings.scheduler_distributed_lock if distributed_lock is None else distributed_lock
        )
        self.cancel_grace = (
            settings.scheduler_cancel_grace_seconds if cancel_grace is None else cancel_grace
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._scheduler = AsyncIOScheduler(
            timezone=settings.scheduler_timezone,
            job_defaults={
                "coalesce": True,  # Combine missed runs into one
                # Overlap is handled in _execute_job so that skips are recorded
                "max_instances": 3,
                "misfire_grace_time": 60 * 5,
            },
        )
        self._active: dict[str, asyncio.Task] = {}
        self._running = False

    @property
    def jobs(self) -> dict[str, JobDefinition]:
        return self._jobs if self._jobs is not None else get_all_jobs()

    @property
    def running(self) -> bool:
        return self._running

    async def seed_configs(self) -> None:
        """Insert default configs for registered jobs that have none yet."""
        await self.config_store.seed(
            JobConfigRecord(
                job_name=d.name,
                schedule=d.schedule,
                enabled=True,
                max_duration_minutes=d.max_duration_minutes,
                description=d.description,
            )
            for d in self.jobs.values()
        )

    async def start(self) -> None:
        """Seed configs, schedule jobs and start the scheduler."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        await self.seed_configs()
        await self._load_jobs()
        self._scheduler.start()
        self._running = True
        logger.info("Job scheduler started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._scheduler.shutdown(wait=False)
        for name, task in list(self._active.items()):
            logger.info(f"Cancelling running job {name}")
            task.cancel()
        if self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)
        self._running = False
        logger.info("Job scheduler stopped")

    async def _load_jobs(self) -> None:
        for config in await self.config_store.list():
            if config.job_name not in self.jobs:
                logger.warning(f"Unknown job in config: {config.job_name}")
                continue
            try:
                trigger = parse_cron(config.schedule)
            except ValueError as e:
                logger.error(f"Invalid schedule for {config.job_name}: {e}")
                continue
            self._scheduler.add_job(
                self._wrap_job(config.job_name),
                trigger=trigger,
                id=config.job_name,
                name=config.description or config.job_name,
                replace_existing=True,
            )
            logger.info(f"Scheduled job: {config.job_name} ({config.schedule})")

    def _wrap_job(self, name: str) -> Callable:
        async def wrapper():
            await self._execute_job(name)

        return wrapper

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _acquire_lock(self, name: str, max_duration: float) -> DistributedLock | None:
        """Cross-instance lock, or None if another instance holds it.

        When Valkey is unreachable the job runs with only the in-process guard.
        """
        lock = DistributedLock(
            f"job:{name}", timeout=int(max_duration + self.cancel_grace) + 60
        )
        try:
            acquired = await lock.acquire()
        except (RedisError, OSError) as e:
            logger.warning(f"Job lock unavailable for {name}, running without it: {e}")
            return lock
        return lock if acquired else None

    async def _execute_job(
        self,
        name: str,
        *,
        manual: bool = False,
        max_duration: float | None = None,
    ) -> str:
        """Run one invocation and return its recorded status."""
        definition = self.jobs.get(name)
        if definition is None:
            raise NotFoundError(f"Unknown job: {name}")

        config = await self.config_store.get(name)
        if config is not None and not config.enabled and not manual:
            logger.info(f"Job {name} skipped - disabled")
            return "skipped"

        if name in self._active:
            logger.warning(f"Job {name} skipped - previous run still in progress")
            await self._record_skip(name, "Previous run still in progress")
            return "skipped"

        minutes = config.max_duration_minutes if config else definition.max_duration_minutes
        deadline = max_duration if max_duration is not None else minutes * 60

        lock = None
        if self.distributed_lock:
            lock = await self._acquire_lock(name, deadline)
            if lock is None:
                logger.info(f"Job {name} skipped - running on another instance")
                await self._record_skip(name, "Running on another instance")
                return "skipped"

        task: asyncio.Task | None = None
        try:
            started_at = self._clock()
            ctx = JobContext(
                name=name, token=CancellationToken(), started_at=started_at, runs=self.run_store
            )
            run_id = await self.run_store.start(name, started_at)
            task = asyncio.create_task(definition.func(ctx), name=f"job:{name}")
            self._active[name] = task
            logger.info(f"Job {name} started")

            status, message, error = await self._supervise(name, task, ctx, deadline)
            completed_at = self._clock()
            await self.run_store.finish(
                run_id,
                status,
                completed_at,
                items_processed=ctx.items_processed,
                items_failed=ctx.items_failed,
                message=message,
                error_message=error,
            )
            await self.config_store.update(
                name, last_run=completed_at, next_run=self.get_next_run_time(name)
            )
            log = logger.info if status == "success" else logger.warning
            log(
                f"Job {name} {status} in {(completed_at - started_at).total_seconds():.1f}s "
                f"({ctx.items_processed} processed, {ctx.items_failed} failed)"
            )
            return status
        finally:
            if task is not None:
                if self._active.get(name) is task:
                    del self._active[name]
                if not task.done():
                    task.cancel()
            if lock is not None:
                await lock.release()

    async def _supervise(
        self, name: str, task: asyncio.Task, ctx: JobContext, deadline: float
    ) -> tuple[str, str | None, str | None]:
        done, _ = await asyncio.wait({task}, timeout=deadline)
        if not done:
            logger.warning(f"Job {name} exceeded its {deadline:.0f}s deadline, cancelling")
            ctx.token.cancel("deadline exceeded")
            done, _ = await asyncio.wait({task}, timeout=self.cancel_grace)
            if not done:
                logger.error(f"Job {name} ignored cancellation, cancelling its task")
                task.cancel()
                await asyncio.wait({task})
                return "cancelled", None, "Deadline exceeded; task cancelled"

        if task.cancelled():
            return "cancelled", None, ctx.token.reason or "Task cancelled"
        exc = task.exception()
        if isinstance(exc, JobCancelled):
            return "cancelled", None, exc.message
        if exc is not None:
            logger.error(f"Job {name} failed: {exc}", exc_info=exc)
            return "failed", None, str(exc) or type(exc).__name__
        result = task.result()
        return "success", str(result) if result is not None else "Completed", None

    async def _record_skip(self, name: str, reason: str) -> None:
        now = self._clock()
        run_id = await self.run_store.start(name, now, status="skipped")
        await self.run_store.finish(run_id, "skipped", now, message=reason)

    # -------------------------------------------------------------------------
    # Management
    # -------------------------------------------------------------------------

    async def run_job_now(self, name: str, max_duration: float | None = None) -> str:
        """Manually trigger a job execution, ignoring its enabled flag."""
        return await self._execute_job(name, manual=True, max_duration=max_duration)

    def is_job_running(self, name: str) -> bool:
        return name in self._active

    def get_next_run_time(self, name: str) -> Optional[datetime]:
        job = self._scheduler.get_job(name)
        return getattr(job, "next_run_time", None) if job else None

    async def reschedule_job(self, name: str, schedule: str) -> JobConfigRecord:
        """Store a new schedule and apply it to the running scheduler."""
        if name not in self.jobs:
            raise NotFoundError(f"Unknown job: {name}")
        try:
            trigger = parse_cron(schedule)
        except ValueError as e:
            raise ValidationError(str(e), details={"schedule": schedule}) from e

        config = await self.config_store.update(name, schedule=schedule)
        if config is None:
            raise NotFoundError(f"No config for job: {name}")

        if self._running:
            if self._scheduler.get_job(name):
                self._scheduler.reschedule_job(name, trigger=trigger)
            else:
                self._scheduler.add_job(
                    self._wrap_job(name),
                    trigger=trigger,
                    id=name,
                    name=config.description or name,
                    replace_existing=True,
                )
        logger.info(f"Rescheduled job: {name} ({schedule})")
        return config

    async def get_jobs_status(self) -> list[dict[str, Any]]:
        """Config, next run time and last run of every known job."""
        status = []
        for config in await self.config_store.list():
            recent = await self.run_store.recent(config.job_name, limit=1)
            status.append(
                {
                    "name": config.job_name,
                    "schedule": config.schedule,
                    "enabled": config.enabled,
                    "max_duration_minutes": config.max_duration_minutes,
                    "description": config.description,
                    "running": self.is_job_running(config.job_name),
                    "next_run_time": self.get_next_run_time(config.job_name),
                    "last_run": recent[0] if recent else None,
                }
            )
        return status

    async def purge_runs(self, retention: timedelta) -> int:
        return await self.run_store.purge(self._clock() - retention)


def build_scheduler() -> JobScheduler:
    """Wire the scheduler for the configured storage backend."""
    if settings.storage_backend == "database":
        from portfolio_analytics.repositories.jobs_orm import SqlJobConfigStore, SqlJobRunStore

        return JobScheduler(SqlJobConfigStore(), SqlJobRunStore())
    return JobScheduler(MemoryJobConfigStore(), MemoryJobRunStore(), distributed_lock=False)


def get_scheduler() -> Optional[JobScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


async def start_scheduler() -> JobScheduler:
    """Create the global scheduler and start it unless disabled."""
    global _scheduler
    if _scheduler is None:
        _scheduler = build_scheduler()
    if settings.scheduler_enabled:
        await _scheduler.start()
    else:
        await _scheduler.seed_configs()
        logger.info("Scheduler disabled via SCHEDULER_ENABLED=false")
    return _scheduler


async def stop_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None

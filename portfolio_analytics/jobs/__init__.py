"""Background job scheduler with deadlines and distributed locking."""

from . import definitions  # noqa: F401  registers the built-in jobs
from .registry import JobDefinition, get_all_jobs, get_job, register_job
from .scheduler import (
    CancellationToken,
    JobContext,
    JobScheduler,
    get_scheduler,
    parse_cron,
    start_scheduler,
    stop_scheduler,
)


__all__ = [
    "CancellationToken",
    "JobContext",
    "JobDefinition",
    "JobScheduler",
    "get_all_jobs",
    "get_job",
    "get_scheduler",
    "parse_cron",
    "register_job",
    "start_scheduler",
    "stop_scheduler",
]

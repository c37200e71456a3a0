"""Job scheduler management routes."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Path, Query

from portfolio_analytics.api.dependencies import job_scheduler
from portfolio_analytics.core.exceptions import NotFoundError
from portfolio_analytics.jobs.scheduler import JobScheduler
from portfolio_analytics.schemas.jobs import (
    JobRunResponse,
    JobScheduleUpdate,
    JobStatusResponse,
    JobTriggerResponse,
)


router = APIRouter(prefix="/jobs", tags=["Jobs"])


def _job_name(name: str = Path(..., min_length=1, max_length=50)) -> str:
    """Validate and normalize job name from path parameter."""
    return name.strip().lower()


def _run_response(record) -> JobRunResponse:
    return JobRunResponse.model_validate(record, from_attributes=True)


@router.get("", response_model=List[JobStatusResponse], summary="List jobs")
async def list_jobs(scheduler: JobScheduler = Depends(job_scheduler)) -> List[JobStatusResponse]:
    jobs = []
    for status in await scheduler.get_jobs_status():
        last_run = status.pop("last_run")
        jobs.append(
            JobStatusResponse(
                **status, last_run=_run_response(last_run) if last_run else None
            )
        )
    return jobs


@router.get(
    "/{name}/runs",
    response_model=List[JobRunResponse],
    summary="Recent runs of a job",
)
async def list_job_runs(
    name: str = Depends(_job_name),
    limit: int = Query(20, ge=1, le=200),
    scheduler: JobScheduler = Depends(job_scheduler),
) -> List[JobRunResponse]:
    if name not in scheduler.jobs:
        raise NotFoundError(f"Unknown job: {name}")
    return [_run_response(r) for r in await scheduler.run_store.recent(name, limit=limit)]


@router.post(
    "/{name}/run",
    response_model=JobTriggerResponse,
    summary="Run a job now",
    description="Runs the job to completion, ignoring its enabled flag. Overlapping runs are skipped.",
)
async def run_job(
    name: str = Depends(_job_name),
    max_duration: Optional[float] = Query(None, gt=0, le=60 * 60 * 6),
    scheduler: JobScheduler = Depends(job_scheduler),
) -> JobTriggerResponse:
    status = await scheduler.run_job_now(name, max_duration=max_duration)
    return JobTriggerResponse(name=name, status=status)


@router.put(
    "/{name}/schedule",
    response_model=JobStatusResponse,
    summary="Change a job's schedule",
)
async def update_schedule(
    payload: JobScheduleUpdate = Body(...),
    name: str = Depends(_job_name),
    scheduler: JobScheduler = Depends(job_scheduler),
) -> JobStatusResponse:
    config = await scheduler.reschedule_job(name, payload.schedule)
    return JobStatusResponse(
        name=config.job_name,
        schedule=config.schedule,
        enabled=config.enabled,
        max_duration_minutes=config.max_duration_minutes,
        description=config.description,
        running=scheduler.is_job_running(name),
        next_run_time=scheduler.get_next_run_time(name),
    )

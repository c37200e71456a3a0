"""Job scheduler schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class JobRunResponse(BaseModel):
    """One recorded job invocation."""

    id: int
    job_name: str
    status: str = Field(..., description="running, success, failed, cancelled or skipped")
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    items_processed: int = 0
    items_failed: int = 0
    message: str | None = None
    error_message: str | None = None

    model_config = {"from_attributes": True}


class JobStatusResponse(BaseModel):
    """Job config with its next and last run."""

    name: str = Field(..., description="Job name")
    schedule: str = Field(..., description="Six-field cron expression")
    enabled: bool
    max_duration_minutes: int
    description: str | None = None
    running: bool = False
    next_run_time: datetime | None = None
    last_run: JobRunResponse | None = None


class JobScheduleUpdate(BaseModel):
    """Reschedule request."""

    schedule: str = Field(
        ...,
        min_length=11,
        max_length=100,
        description="Cron expression: second minute hour day month weekday",
        examples=["0 30 * * * *"],
    )

    @field_validator("schedule")
    @classmethod
    def validate_schedule(cls, v: str) -> str:
        from portfolio_analytics.jobs.scheduler import parse_cron

        v = v.strip()
        try:
            parse_cron(v)
        except ValueError as e:
            raise ValueError(f"Invalid cron expression: {e}")
        return v


class JobTriggerResponse(BaseModel):
    """Result of a manual run."""

    name: str
    status: str

"""FastAPI dependencies for services and the scheduler."""

from __future__ import annotations

from portfolio_analytics.core.exceptions import ExternalServiceError
from portfolio_analytics.jobs.scheduler import JobScheduler, get_scheduler
from portfolio_analytics.services.analytics import AnalyticsService, get_analytics_service


def analytics_service() -> AnalyticsService:
    return get_analytics_service()


def job_scheduler() -> JobScheduler:
    scheduler = get_scheduler()
    if scheduler is None:
        raise ExternalServiceError("Job scheduler is not initialized")
    return scheduler

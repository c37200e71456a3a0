"""Health check endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter

from portfolio_analytics.cache.client import valkey_healthcheck
from portfolio_analytics.core.config import settings
from portfolio_analytics.core.logging import get_logger
from portfolio_analytics.database.connection import db_healthcheck
from portfolio_analytics.schemas.common import HealthResponse


router = APIRouter(prefix="/health", tags=["Health"])

logger = get_logger("health")


@router.get(
    "",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the API and its dependencies.",
)
async def health_check() -> HealthResponse:
    """
    Perform health check on API and dependencies.

    With the memory backend only the process itself is checked.
    """
    checks: dict[str, bool] = {}
    if settings.storage_backend == "database":
        checks["database"] = await db_healthcheck()
    if settings.scheduler_distributed_lock:
        checks["valkey"] = await valkey_healthcheck()

    if all(checks.values()):
        status = "healthy"
    elif checks.get("database", True):
        status = "degraded"  # DB ok but lock store down
    else:
        status = "unhealthy"

    return HealthResponse(
        status=status,
        version=settings.app_version,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )

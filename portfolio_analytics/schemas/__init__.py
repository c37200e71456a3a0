"""Pydantic schemas for cached payloads and API responses."""

from .analytics import (
    CacheHealthResponse,
    CacheInfo,
    CorrelationMatrixPayload,
    CorrelationResponse,
    InvalidationResponse,
    RegimeForecastPayload,
    RegimeForecastResponse,
    RiskMetricsPayload,
    RiskResponse,
    VolatilityForecastPayload,
    VolatilityForecastResponse,
)
from .common import ErrorResponse, HealthResponse
from .jobs import JobRunResponse, JobScheduleUpdate, JobStatusResponse, JobTriggerResponse


__all__ = [
    "CacheHealthResponse",
    "CacheInfo",
    "CorrelationMatrixPayload",
    "CorrelationResponse",
    "ErrorResponse",
    "HealthResponse",
    "InvalidationResponse",
    "JobRunResponse",
    "JobScheduleUpdate",
    "JobStatusResponse",
    "JobTriggerResponse",
    "RegimeForecastPayload",
    "RegimeForecastResponse",
    "RiskMetricsPayload",
    "RiskResponse",
    "VolatilityForecastPayload",
    "VolatilityForecastResponse",
]

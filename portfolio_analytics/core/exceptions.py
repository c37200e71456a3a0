"""Custom exceptions and centralized exception handlers."""

from __future__ import annotations

import math
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .logging import get_logger


class AppException(Exception):
    """Base application exception with structured error response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.status_code = status_code or self.status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to RFC 7807 problem+json style response."""
        return {
            "error": self.error_code,
            "message": self.message,
            "status": self.status_code,
            **({"details": self.details} if self.details else {}),
        }

    def response_headers(self) -> dict[str, str]:
        return {}


class NotFoundError(AppException):
    """Resource not found."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"
    message = "Resource not found"


class ValidationError(AppException):
    """Validation failed."""

    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    error_code = "VALIDATION_ERROR"
    message = "Validation failed"


class ExternalServiceError(AppException):
    """External service error."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "EXTERNAL_SERVICE_ERROR"
    message = "External service temporarily unavailable"


class ConflictError(AppException):
    """Resource conflict."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "CONFLICT"
    message = "Resource conflict"


class CacheError(AppException):
    """Cache operation failed."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "CACHE_ERROR"
    message = "Cache operation failed"


class JobError(AppException):
    """Job execution failed."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "JOB_ERROR"
    message = "Job execution failed"


class JobCancelled(JobError):
    """A job observed its cancellation signal and stopped."""

    error_code = "JOB_CANCELLED"
    message = "Job cancelled"


# =============================================================================
# ANALYTICS ERRORS
# =============================================================================


class AnalyticsError(AppException):
    """Base class for analytics and coordination failures."""

    error_code = "ANALYTICS_ERROR"
    message = "Analytics computation failed"


class InsufficientData(AnalyticsError):
    """Too few observations for a stable estimate. Never retried automatically."""

    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    error_code = "INSUFFICIENT_DATA"
    message = "Not enough observations for a stable estimate"

    def __init__(
        self,
        message: str | None = None,
        *,
        required: int | None = None,
        available: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = dict(details or {})
        if required is not None:
            details["required"] = required
        if available is not None:
            details["available"] = available
        super().__init__(message, details=details)
        self.required = required
        self.available = available


class ConvergenceFailure(AnalyticsError):
    """An iterative optimizer stopped without converging."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "CONVERGENCE_FAILURE"
    message = "Model estimation did not converge"


class UpstreamUnavailable(AnalyticsError, ExternalServiceError):
    """External data fetch was skipped or failed."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "UPSTREAM_UNAVAILABLE"
    message = "Upstream data provider unavailable"


class AlreadyCalculating(AnalyticsError, ConflictError):
    """Another caller holds the calculating lease and nothing can be served yet."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "ALREADY_CALCULATING"
    message = "Result is being calculated, try again shortly"


class InvalidDistribution(AnalyticsError):
    """A probability vector does not sum to one within tolerance."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "INVALID_DISTRIBUTION"
    message = "Probability distribution outside tolerance"


class NoData(AnalyticsError, NotFoundError):
    """Subject is unknown to the time-series store."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NO_DATA"
    message = "No data for subject"


class CorruptPayload(AnalyticsError, CacheError):
    """A stored payload failed validation on read."""

    error_code = "CORRUPT_PAYLOAD"
    message = "Stored payload is malformed"


class ArtifactUnavailable(AnalyticsError):
    """No usable value exists and the last computation is still backing off."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "ARTIFACT_UNAVAILABLE"
    message = "Result unavailable, retry after backoff"

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: float,
        last_error: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = dict(details or {})
        details["retry_after"] = max(0, math.ceil(retry_after))
        if last_error:
            details["last_error"] = last_error
        super().__init__(message, details=details)
        self.retry_after = retry_after
        self.last_error = last_error

    def response_headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.details["retry_after"])}


def register_exception_handlers(app: FastAPI) -> None:
    """Register centralized exception handlers."""

    @app.exception_handler(AppException)
    async def app_exception_handler(
        request: Request, exc: AppException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers={
                "X-Request-ID": getattr(request.state, "request_id", "unknown"),
                **exc.response_headers(),
            },
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger = get_logger("error")
        logger.exception(
            "Unhandled exception",
            extra={
                "request_id": getattr(request.state, "request_id", "unknown"),
                "path": request.url.path,
                "method": request.method,
            },
        )

        from .config import settings

        message = str(exc) if settings.debug else "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "INTERNAL_ERROR",
                "message": message,
                "status": 500,
            },
            headers={"X-Request-ID": getattr(request.state, "request_id", "unknown")},
        )

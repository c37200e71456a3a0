"""Core infrastructure: settings, logging, exceptions."""

from .config import settings
from .exceptions import (
    AlreadyCalculating,
    AnalyticsError,
    AppException,
    ArtifactUnavailable,
    ConvergenceFailure,
    CorruptPayload,
    InsufficientData,
    InvalidDistribution,
    NoData,
    UpstreamUnavailable,
)
from .logging import get_logger, setup_logging


__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
    "AppException",
    "AnalyticsError",
    "AlreadyCalculating",
    "ArtifactUnavailable",
    "ConvergenceFailure",
    "CorruptPayload",
    "InsufficientData",
    "InvalidDistribution",
    "NoData",
    "UpstreamUnavailable",
]

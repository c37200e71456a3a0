"""Job registry mapping job names to functions and their default schedules."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from portfolio_analytics.core.logging import get_logger


if TYPE_CHECKING:
    from .scheduler import JobContext


logger = get_logger("jobs.registry")

JobFunc = Callable[["JobContext"], Awaitable[Any]]


@dataclass(frozen=True)
class JobDefinition:
    """A registered job and the config it is seeded with."""
    name: str
    func: JobFunc
    schedule: str
    max_duration_minutes: int = 30
    description: str | None = None


# Global job registry
_registry: dict[str, JobDefinition] = {}


def register_job(
    name: str,
    schedule: str,
    max_duration_minutes: int = 30,
    description: str | None = None,
) -> Callable[[JobFunc], JobFunc]:
    """
    Decorator to register a job function.

    Usage:
        @register_job("warm_caches", "0 30 * * * *", max_duration_minutes=20)
        async def warm_caches(ctx: JobContext) -> str:
            ...
    """

    def decorator(func: JobFunc) -> JobFunc:
        _registry[name] = JobDefinition(
            name=name,
            func=func,
            schedule=schedule,
            max_duration_minutes=max_duration_minutes,
            description=description or (func.__doc__ or "").strip().split("\n")[0] or None,
        )
        logger.debug(f"Registered job: {name}")
        return func

    return decorator


def get_job(name: str) -> JobDefinition | None:
    return _registry.get(name)


def get_all_jobs() -> dict[str, JobDefinition]:
    return _registry.copy()


def unregister_job(name: str) -> None:
    _registry.pop(name, None)

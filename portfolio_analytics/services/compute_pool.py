"""Worker pool for CPU-bound model fitting.

GARCH optimization and Baum-Welch training run here so they never block the
event loop that serves requests.
"""

from __future__ import annotations

import asyncio
import functools
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Any, Callable, Optional, TypeVar

from portfolio_analytics.core.config import settings
from portfolio_analytics.core.logging import get_logger


logger = get_logger("services.compute_pool")

T = TypeVar("T")

_pool: Optional["ComputePool"] = None


class ComputePool:
    """Runs blocking callables on a process or thread pool.

    ``kind="inline"`` runs the callable directly on the loop, which is only
    meant for tests and debugging.
    """

    def __init__(self, kind: str = "process", max_workers: int = 2):
        if kind not in {"process", "thread", "inline"}:
            raise ValueError(f"Unknown executor kind: {kind}")
        self.kind = kind
        self.max_workers = max_workers
        self._executor: Executor | None = None

    def _get_executor(self) -> Executor:
        if self._executor is None:
            if self.kind == "process":
                self._executor = ProcessPoolExecutor(max_workers=self.max_workers)
            else:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix="compute"
                )
            logger.info(f"Compute pool started ({self.kind}, {self.max_workers} workers)")
        return self._executor

    async def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        call = functools.partial(func, *args, **kwargs)
        if self.kind == "inline":
            return call()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._get_executor(), call)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            logger.info("Compute pool stopped")


def get_compute_pool() -> ComputePool:
    """Get the global compute pool configured from settings."""
    global _pool
    if _pool is None:
        _pool = ComputePool(settings.compute_executor, settings.compute_max_workers)
    return _pool


def shutdown_compute_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.shutdown()
        _pool = None

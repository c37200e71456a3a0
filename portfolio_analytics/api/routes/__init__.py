"""API route modules."""

from . import analytics, health, jobs


__all__ = ["analytics", "health", "jobs"]

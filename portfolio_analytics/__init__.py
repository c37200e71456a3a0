"""Portfolio analytics and cache-coordination engine."""

__version__ = "1.0.0"

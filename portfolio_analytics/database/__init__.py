"""Database module with SQLAlchemy async ORM over asyncpg."""

from .connection import (
    close_database,
    get_session,
    init_database,
)
from .orm import Base


__all__ = [
    "Base",
    "get_session",
    "init_database",
    "close_database",
]

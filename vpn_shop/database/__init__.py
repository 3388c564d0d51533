"""Database package exports."""

from .database import (
    AsyncSessionLocal,
    close_db,
    get_db,
    health_check,
    init_db,
)

__all__ = [
    "AsyncSessionLocal",
    "close_db",
    "get_db",
    "health_check",
    "init_db",
]

"""SQLite database layer: connection management and unit-of-work transactions."""

from shared.db.connection import Database, StoreBusyError

__all__ = [
    "Database",
    "StoreBusyError",
]

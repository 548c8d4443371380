"""Storage layer for context snapshots.

Provides the snapshot store interface with in-memory and SQLAlchemy
implementations, plus the database wrapper used by the latter.
"""

from switchboard.storage.base import ContextStore
from switchboard.storage.database import Database, DatabaseConfig
from switchboard.storage.memory import InMemoryContextStore
from switchboard.storage.sql_store import SQLContextStore

__all__ = [
    "ContextStore",
    "Database",
    "DatabaseConfig",
    "InMemoryContextStore",
    "SQLContextStore",
]

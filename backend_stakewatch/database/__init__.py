"""
Persistence layer: holder snapshots and events, staking transfers, ledgers, fetch cursor.

SQLite via Database and get_database(); backend is swappable through SnapshotStore.
"""

from backend_stakewatch.database.database import (
    Database,
    SnapshotStore,
    SQLiteBackend,
    get_database,
)
from backend_stakewatch.database.models import SnapshotInfo

__all__ = [
    "Database",
    "SnapshotInfo",
    "SnapshotStore",
    "SQLiteBackend",
    "get_database",
]

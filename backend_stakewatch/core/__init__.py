"""
Core utilities — exceptions and other cross-cutting concerns shared by the
extractor, matcher, ledger engine, snapshot differ and storage layer.
"""

from backend_stakewatch.core.exceptions import (
    ConfigError,
    MalformedSnapshotError,
    SnapshotNotFoundError,
    StakewatchError,
    StorageError,
    TransactionFetchError,
)

__all__ = [
    "ConfigError",
    "MalformedSnapshotError",
    "SnapshotNotFoundError",
    "StakewatchError",
    "StorageError",
    "TransactionFetchError",
]

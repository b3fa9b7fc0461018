"""
Application-level exceptions.

One base class so callers can catch everything raised by this package, and one
subclass per failure the reconciliation pipeline reports to its caller.
"""

from __future__ import annotations


class StakewatchError(Exception):
    """Base class for all Backend Stakewatch errors."""


class ConfigError(StakewatchError):
    """Environment configuration is missing or invalid."""


class MalformedSnapshotError(StakewatchError, ValueError):
    """Snapshot input rejected by the differ (missing timestamp, negative balance, ...)."""

    def __init__(self, message: str, *, actor: str | None = None) -> None:
        super().__init__(message)
        self.actor = actor


class SnapshotNotFoundError(StakewatchError, LookupError):
    """No holder rows are stored for the requested snapshot id."""

    def __init__(self, snapshot_id: int) -> None:
        super().__init__(f"snapshot {snapshot_id} not found")
        self.snapshot_id = snapshot_id


class StorageError(StakewatchError):
    """A store call failed; the call's writes were rolled back."""


class TransactionFetchError(StakewatchError):
    """The transaction source gave up after exhausting its retries."""

"""
Row models for stored entities that have no domain model of their own.

Holder snapshots, holder events, transfers and ledgers are stored as their
domain dataclasses; these cover bookkeeping rows only.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class SnapshotInfo:
    """One stored snapshot header."""

    snapshot_id: int
    taken_at: int
    """Unix timestamp (seconds) of capture."""
    holder_count: int
    created_at: int | None = None


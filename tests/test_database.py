"""
Tests for the SQLite store (database.database). Each test gets a fresh DB via the store fixture.
"""

from __future__ import annotations

import pytest

from backend_stakewatch.core.exceptions import SnapshotNotFoundError, StorageError
from backend_stakewatch.snapshots.models import HolderEvent, HolderEventType, HolderSnapshot
from backend_stakewatch.solana_listener.models import TransferDirection, TransferRecord
from backend_stakewatch.staking.engine import build_ledger

ALICE = "So11111111111111111111111111111111111111112"
BOB = "11111111111111111111111111111111"
TS = 1_700_000_000


def test_snapshot_save_and_load(store):
    holders = [
        HolderSnapshot(BOB, 10.5, TS),
        HolderSnapshot(ALICE, 100.0, TS),
        HolderSnapshot(ALICE, frozenset({"mintB", "mintA"}), TS),
    ]
    store.save_snapshot(1, holders)
    loaded = store.load_snapshot(1)
    assert sorted(loaded, key=lambda h: (h.actor, h.is_fungible)) == sorted(
        holders, key=lambda h: (h.actor, h.is_fungible)
    )
    (info,) = store.list_snapshots()
    assert (info.snapshot_id, info.taken_at, info.holder_count) == (1, TS, 3)


def test_snapshot_replace_and_empty(store):
    store.save_snapshot(1, [HolderSnapshot(ALICE, 1.0, TS)])
    store.save_snapshot(1, [HolderSnapshot(BOB, 2.0, TS)])
    assert [h.actor for h in store.load_snapshot(1)] == [BOB]
    store.save_snapshot(2, [], taken_at=TS + 10)
    assert store.load_snapshot(2) == []
    assert [s.snapshot_id for s in store.list_snapshots()] == [1, 2]


def test_unknown_snapshot(store):
    with pytest.raises(SnapshotNotFoundError) as exc:
        store.load_snapshot(99)
    assert exc.value.snapshot_id == 99


def _event(kind: HolderEventType, actor: str, ts: int | None = TS) -> HolderEvent:
    return HolderEvent(type=kind, dest_actor=actor, amount=5.0, snapshot_id=3, timestamp=ts)


def test_events_replace_in_order(store):
    first = [_event(HolderEventType.NEW_HOLDER, ALICE), _event(HolderEventType.TRANSFER_IN, BOB)]
    assert store.save_events(3, first) == 2
    assert store.load_events(3) == first
    second = [_event(HolderEventType.TRANSFER_IN, BOB)]
    store.save_events(3, second)
    assert store.load_events(3) == second
    assert store.load_events(4) == []


def test_failed_event_save_keeps_previous_set(store):
    """A failing row rolls back the delete as well."""
    good = [_event(HolderEventType.NEW_HOLDER, ALICE)]
    store.save_events(3, good)
    broken = [_event(HolderEventType.NEW_HOLDER, BOB), _event(HolderEventType.NEW_HOLDER, BOB, ts=None)]
    with pytest.raises(StorageError):
        store.save_events(3, broken)
    assert store.load_events(3) == good


def test_transfers_dedup_and_order(store):
    records = [
        TransferRecord(TS + 10, TransferDirection.WITHDRAWAL, ALICE, 30.0, "sig2"),
        TransferRecord(TS, TransferDirection.DEPOSIT, ALICE, 100.0, "sig1"),
        TransferRecord(TS + 5, TransferDirection.DEPOSIT, BOB, 7.0, "sig3"),
    ]
    assert store.save_transfers(records) == 3
    assert store.save_transfers(records[:1]) == 0
    assert [r.tx_signature for r in store.load_transfers()] == ["sig1", "sig3", "sig2"]
    assert store.load_transfers(ALICE)[0] == records[1]


def test_transfers_same_actor_two_legs(store):
    """Two contract legs of one transaction for the same actor are separate rows."""
    records = [
        TransferRecord(TS, TransferDirection.DEPOSIT, ALICE, 50.0, "sigM", leg=0),
        TransferRecord(TS, TransferDirection.DEPOSIT, ALICE, 30.0, "sigM", leg=1),
    ]
    assert store.save_transfers(records) == 2
    assert store.save_transfers(records) == 0
    assert store.load_transfers(ALICE) == records


def test_ledger_round_trip(store):
    history = [
        TransferRecord(TS, TransferDirection.DEPOSIT, ALICE, 100.0, "sig1"),
        TransferRecord(TS + 1, TransferDirection.WITHDRAWAL, ALICE, 130.0, "sig2"),
        TransferRecord(TS + 2, TransferDirection.DEPOSIT, ALICE, 40.0, "sig3"),
    ]
    ledger = build_ledger(ALICE, history, now=TS + 3)
    store.save_ledger(ALICE, ledger)
    store.save_ledger(ALICE, ledger)
    assert store.load_ledgers() == {ALICE: ledger}
    with pytest.raises(ValueError):
        store.save_ledger(BOB, ledger)
    store.save_ledgers({ALICE: ledger})
    assert store.load_ledgers() == {ALICE: ledger}


def test_cursor_upsert(store):
    assert store.load_cursor() == {}
    store.save_cursor({ALICE: "sigA", BOB: "sigB"})
    store.save_cursor({ALICE: "sigA2"})
    assert store.load_cursor() == {ALICE: "sigA2", BOB: "sigB"}

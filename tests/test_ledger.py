"""
Tests for the FIFO stake ledger (staking.engine).

Covers the lot-sum invariant, idempotence, FIFO consumption, explicit
shortfall reporting, lock status and the aggregate views.
"""

from __future__ import annotations

import pytest

from backend_stakewatch.solana_listener.models import TransferDirection, TransferRecord
from backend_stakewatch.staking.engine import (
    DEFAULT_STAKING_PERIOD_SEC,
    build_ledger,
    build_ledgers,
    group_transfers_by_actor,
    rank_ledgers,
    reconcile_contract_balance,
    summarize_ledgers,
    unlock_schedule,
)
from backend_stakewatch.staking.models import UnlockBucket

ALICE = "So11111111111111111111111111111111111111112"
BOB = "11111111111111111111111111111111"
CAROL = "9QCfNuQuxct1Xk9ytFYgxc5fThmTzL4pHQnSjjrVUrka"
T0 = 1_700_000_000  # 2023-11-14T22:13:20Z
DAY = 86_400


def dep(amount: float, ts: int, actor: str = ALICE, sig: str | None = None) -> TransferRecord:
    return TransferRecord(ts, TransferDirection.DEPOSIT, actor, amount, sig or f"d{ts}-{amount}")


def wd(amount: float, ts: int, actor: str = ALICE, sig: str | None = None) -> TransferRecord:
    return TransferRecord(ts, TransferDirection.WITHDRAWAL, actor, amount, sig or f"w{ts}-{amount}")


HISTORIES = [
    [],
    [dep(100, 0)],
    [dep(100, 0), dep(50, 10), wd(120, 20)],
    [dep(100, 0), wd(150, 5), dep(40, 6)],
    [dep(10, 0), dep(20, 1), dep(30, 2), wd(15, 3), wd(15, 4), dep(5, 5 + 100 * DAY)],
]


@pytest.mark.parametrize("history", HISTORIES)
def test_lot_sum_invariant(history):
    """total_staked == sum of remaining == locked + unlocked."""
    ledger = build_ledger(ALICE, history, now=T0)
    remaining = sum(lot.remaining_amount for lot in ledger.lots)
    assert ledger.total_staked == pytest.approx(remaining)
    assert ledger.total_staked == pytest.approx(ledger.total_locked + ledger.total_unlocked)
    for lot in ledger.lots:
        assert 0 < lot.remaining_amount <= lot.original_amount


@pytest.mark.parametrize("history", HISTORIES)
def test_idempotent(history):
    """Two builds from the same input compare equal."""
    assert build_ledger(ALICE, history, T0, DAY) == build_ledger(ALICE, history, T0, DAY)


def test_fifo_consumption():
    """Deposits 100@t0, 50@t10, withdrawal 120@t20 -> one lot of 30 from t10."""
    ledger = build_ledger(ALICE, [dep(100, 0), dep(50, 10), wd(120, 20)], now=T0)
    (lot,) = ledger.lots
    assert lot.remaining_amount == pytest.approx(30)
    assert lot.original_amount == 50
    assert lot.deposit_timestamp == 10
    assert not ledger.has_shortfall


def test_shortfall_is_explicit():
    """Deposit 100, withdraw 150 -> staked 0 and a shortfall of 50."""
    ledger = build_ledger(ALICE, [dep(100, 0), wd(150, 5, sig="w-big")], now=T0)
    assert ledger.total_staked == 0
    assert ledger.lots == []
    assert ledger.shortfall == pytest.approx(50)
    (record,) = ledger.shortfalls
    assert record.tx_signature == "w-big"
    assert record.timestamp == 5
    assert ledger.state == "empty"


def test_shortfall_does_not_offset_later_deposit():
    """A later deposit opens a full lot; the shortfall stays reported."""
    ledger = build_ledger(ALICE, [dep(100, 0), wd(150, 5), dep(40, 6)], now=T0)
    (lot,) = ledger.lots
    assert lot.remaining_amount == 40
    assert ledger.shortfall == pytest.approx(50)
    assert ledger.state == "active"


def test_lock_status():
    """locked means unlock_timestamp > now; equal counts as unlocked."""
    history = [dep(100, T0 - 10 * DAY), dep(50, T0 - 1 * DAY), dep(25, T0 - 5 * DAY - 1)]
    ledger = build_ledger(ALICE, history, now=T0, staking_period=5 * DAY)
    assert ledger.total_unlocked == pytest.approx(125)
    assert ledger.total_locked == pytest.approx(50)
    boundary = build_ledger(ALICE, [dep(10, T0 - DAY)], now=T0, staking_period=DAY)
    assert boundary.lots[0].locked is False
    assert boundary.lots[0].unlock_timestamp == T0


def test_default_staking_period_is_ninety_days():
    ledger = build_ledger(ALICE, [dep(1, T0)], now=T0)
    assert ledger.lots[0].unlock_timestamp == T0 + 90 * DAY
    assert DEFAULT_STAKING_PERIOD_SEC == 90 * DAY


def test_same_timestamp_deposit_before_withdrawal():
    """Within one second a deposit is applied first, whatever the input order."""
    ledger = build_ledger(ALICE, [wd(60, 10), dep(100, 10)], now=T0)
    assert ledger.total_staked == pytest.approx(40)
    assert not ledger.has_shortfall


def test_input_order_does_not_matter():
    history = [dep(100, 0), dep(50, 10), wd(120, 20), dep(7, 30)]
    assert build_ledger(ALICE, history, T0) == build_ledger(ALICE, list(reversed(history)), T0)


def test_rejects_foreign_or_non_positive_records():
    with pytest.raises(ValueError):
        build_ledger(ALICE, [dep(10, 0, actor=BOB)], now=T0)
    with pytest.raises(ValueError):
        build_ledger(ALICE, [dep(0, 0)], now=T0)


def _ledgers():
    return build_ledgers(
        [
            dep(100, T0 - 100 * DAY, ALICE),
            dep(300, T0 - DAY, BOB),
            wd(20, T0 - DAY + 5, BOB),
            dep(10, T0 - 200 * DAY, CAROL),
            wd(15, T0 - 150 * DAY, CAROL),
        ],
        now=T0,
    )


def test_build_ledgers_and_summary():
    ledgers = _ledgers()
    assert set(ledgers) == {ALICE, BOB, CAROL}
    summary = summarize_ledgers(ledgers.values())
    assert summary.total_staked == pytest.approx(380)
    assert summary.total_unlocked == pytest.approx(100)
    assert summary.total_locked == pytest.approx(280)
    assert summary.total_shortfall == pytest.approx(5)
    assert summary.actor_count == 2


def test_rank_ledgers():
    ledgers = _ledgers().values()
    assert [lg.actor for lg in rank_ledgers(ledgers)] == [BOB, ALICE]
    assert [lg.actor for lg in rank_ledgers(ledgers, limit=1)] == [BOB]
    assert [lg.actor for lg in rank_ledgers(ledgers, search="so111")] == [ALICE]
    assert CAROL in [lg.actor for lg in rank_ledgers(ledgers, include_empty=True)]


def test_unlock_schedule_from_today():
    """Buckets by UTC date, today onwards, ascending; past dates are dropped."""
    history = [
        dep(10, T0, ALICE),  # unlocks 2023-11-15 22:13
        dep(5, T0 + 3600, ALICE),  # unlocks 2023-11-15 23:13
        dep(7, T0 - DAY - 3600, ALICE),  # unlocked earlier today
        dep(100, T0 - 20 * DAY, ALICE),  # unlocked long ago
        dep(3, T0, BOB),
    ]
    ledgers = build_ledgers(history, now=T0, staking_period=DAY)
    assert unlock_schedule(ledgers, now=T0) == [
        UnlockBucket("2023-11-14", 7),
        UnlockBucket("2023-11-15", 18),
    ]
    assert unlock_schedule(ledgers, now=T0, actor=BOB) == [UnlockBucket("2023-11-15", 3)]
    assert unlock_schedule({}, now=T0) == []


def test_reconcile_contract_balance():
    summary = summarize_ledgers(_ledgers().values())
    ok = reconcile_contract_balance(summary, 380.5, tolerance=1.0)
    assert ok.within_tolerance
    bad = reconcile_contract_balance(summary, 400.0, tolerance=1.0)
    assert not bad.within_tolerance
    assert bad.discrepancy == pytest.approx(20)
    assert bad.calculated == pytest.approx(380)


def test_group_transfers_by_actor_keeps_order():
    records = [dep(1, 5, BOB), dep(2, 3, ALICE), wd(1, 1, BOB)]
    grouped = group_transfers_by_actor(records)
    assert [r.timestamp for r in grouped[BOB]] == [5, 1]
    assert list(grouped[ALICE]) == [records[1]]

"""
Tests for the reconciliation runs (agent_worker.runner).

A FakeSource stands in for the RPC; the store fixture gives a real SQLite DB.
"""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock

import pytest

from backend_stakewatch.agent_worker import runner
from backend_stakewatch.agent_worker.runner import (
    ReconciliationConfig,
    main,
    run_snapshot_diff,
    run_staking_reconciliation,
)
from backend_stakewatch.core.exceptions import SnapshotNotFoundError, StorageError
from backend_stakewatch.snapshots.models import HolderEventType, HolderSnapshot
from backend_stakewatch.solana_listener.listener import TransactionPage

CONTRACT = "9QCfNuQuxct1Xk9ytFYgxc5fThmTzL4pHQnSjjrVUrka"
MINT = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ALICE = "So11111111111111111111111111111111111111112"
BOB = "11111111111111111111111111111111"
T0 = 1_700_000_000


class FakeSource:
    """
    Returns queued pages and records the cursor and deadline each fetch was given.

    With a `release` event the fetch blocks until the event is set (a slow RPC).
    """

    def __init__(self, *pages: TransactionPage, release: threading.Event | None = None):
        self.pages = list(pages)
        self.cursors: list[dict] = []
        self.deadlines: list = []
        self.release = release

    def fetch_transactions(self, addresses, cursor=None, *, deadline=None):
        self.cursors.append(dict(cursor or {}))
        self.deadlines.append(deadline)
        if self.release is not None:
            self.release.wait(timeout=10)
        return self.pages.pop(0) if self.pages else TransactionPage(cursor=dict(cursor or {}))


@pytest.fixture
def config():
    return ReconciliationConfig(contract_address=CONTRACT, mint=MINT, workers=2)


@pytest.fixture
def first_page(raw_tx):
    txs = [
        raw_tx("sig1", T0, [(0, CONTRACT, 0.0, 100.0), (1, ALICE, 100.0, 0.0)], mint=MINT),
        raw_tx("sig2", T0 + 60, [(0, CONTRACT, 100.0, 70.0), (1, ALICE, 0.0, 30.0)], mint=MINT),
        raw_tx("sig3", T0 + 120, [(0, CONTRACT, 70.0, 95.0), (2, BOB, 25.0, 0.0)], mint=MINT),
    ]
    return TransactionPage(transactions=txs, cursor={CONTRACT: "sig3"})


def test_end_to_end_with_store(store, config, first_page):
    """Deposit 100, withdraw 30 -> 70 staked; transfers, ledgers and cursor are stored."""
    report = run_staking_reconciliation(FakeSource(first_page), config, store=store, now=T0 + 600)
    assert report.ledgers[ALICE].total_staked == pytest.approx(70)
    assert report.ledgers[BOB].total_staked == pytest.approx(25)
    assert report.summary.total_staked == pytest.approx(95)
    assert report.new_transfers == 3
    assert not report.timed_out
    assert store.load_cursor() == {CONTRACT: "sig3"}
    assert set(store.load_ledgers()) == {ALICE, BOB}
    assert report.to_dict()["actors"] == 2


def test_incremental_run_resumes_and_keeps_history(store, config, first_page, raw_tx):
    """Second run starts from the stored cursor and still sees the first run's deposits."""
    run_staking_reconciliation(FakeSource(first_page), config, store=store, now=T0 + 600)
    later = TransactionPage(
        transactions=[raw_tx("sig4", T0 + 300, [(0, CONTRACT, 95.0, 85.0), (1, ALICE, 0.0, 10.0)], mint=MINT)],
        cursor={CONTRACT: "sig4"},
    )
    source = FakeSource(later)
    report = run_staking_reconciliation(source, config, store=store, now=T0 + 600)
    assert source.cursors == [{CONTRACT: "sig3"}]
    assert report.new_transfers == 1
    assert report.ledgers[ALICE].total_staked == pytest.approx(60)
    assert store.load_cursor() == {CONTRACT: "sig4"}


def test_rerun_does_not_double_count(store, config, first_page):
    run_staking_reconciliation(FakeSource(first_page), config, store=store, now=T0 + 600)
    source = FakeSource(first_page)
    report = run_staking_reconciliation(source, config, store=store, now=T0 + 600, incremental=False)
    assert source.cursors == [{}]
    assert report.new_transfers == 0
    assert report.ledgers[ALICE].total_staked == pytest.approx(70)


def test_run_without_store(config, first_page):
    report = run_staking_reconciliation(FakeSource(first_page), config, now=T0 + 600)
    assert report.summary.total_staked == pytest.approx(95)
    assert report.cursor == {CONTRACT: "sig3"}


def test_unmatched_delta_reported(config, raw_tx):
    page = TransactionPage(
        transactions=[raw_tx("sigX", T0, [(0, CONTRACT, 0.0, 500.0)], mint=MINT)],
        cursor={CONTRACT: "sigX"},
    )
    report = run_staking_reconciliation(FakeSource(page), config, now=T0)
    (u,) = report.unmatched
    assert u.tx_signature == "sigX"
    assert report.ledgers == {}


def test_deadline_leaves_actors_unprocessed(store, config, first_page):
    """An exhausted deadline reports every stored actor as unprocessed without fetching."""
    run_staking_reconciliation(FakeSource(first_page), config, store=store, now=T0 + 600)
    source = FakeSource()
    report = run_staking_reconciliation(source, config, store=store, now=T0 + 600, deadline_sec=0)
    assert report.timed_out
    assert report.unprocessed_actors == sorted([ALICE, BOB])
    assert report.ledgers == {}
    assert source.cursors == []
    assert store.load_cursor() == {CONTRACT: "sig3"}


def test_deadline_bounds_slow_fetch(store, config, first_page):
    """A source still fetching when the deadline passes does not hold the run up."""
    release = threading.Event()
    source = FakeSource(first_page, release=release)
    try:
        started = time.monotonic()
        report = run_staking_reconciliation(source, config, store=store, now=T0 + 600, deadline_sec=0.2)
        elapsed = time.monotonic() - started
    finally:
        release.set()
    assert elapsed < 1.0
    assert report.timed_out
    assert report.new_transfers == 0
    assert source.deadlines[0] is not None
    assert store.load_transfers() == []
    assert store.load_cursor() == {}


def test_deadline_passed_to_source(config, first_page):
    source = FakeSource(first_page)
    report = run_staking_reconciliation(source, config, now=T0 + 600, deadline_sec=30)
    assert not report.timed_out
    assert source.deadlines[0] > time.monotonic()


def test_two_contract_legs_same_actor_stored(store, config, raw_tx):
    """Two deposits by one actor in one transaction both survive the store."""
    tx = raw_tx(
        "sigM",
        T0,
        [(0, CONTRACT, 0.0, 50.0), (1, CONTRACT, 0.0, 30.0), (2, ALICE, 50.0, 0.0), (3, ALICE, 30.0, 0.0)],
        mint=MINT,
    )
    page = TransactionPage(transactions=[tx], cursor={CONTRACT: "sigM"})
    without_store = run_staking_reconciliation(FakeSource(page), config, now=T0 + 600)
    with_store = run_staking_reconciliation(FakeSource(page), config, store=store, now=T0 + 600)
    assert without_store.ledgers[ALICE].total_staked == pytest.approx(80)
    assert with_store.ledgers[ALICE].total_staked == pytest.approx(80)
    assert with_store.new_transfers == 2
    assert len(store.load_transfers()) == 2


def test_slow_ledger_build_abandoned(monkeypatch, config, first_page):
    """A build still running at the deadline is left behind and logged; the others are kept."""
    release = threading.Event()
    real_build = runner.build_ledger

    def build(actor, records, now, period):
        if actor == BOB:
            release.wait(timeout=10)
        return real_build(actor, records, now, period)

    log = MagicMock()
    monkeypatch.setattr(runner, "build_ledger", build)
    monkeypatch.setattr(runner, "logger", log)
    try:
        started = time.monotonic()
        report = run_staking_reconciliation(FakeSource(first_page), config, now=T0 + 600, deadline_sec=0.3)
        elapsed = time.monotonic() - started
    finally:
        release.set()
    assert elapsed < 1.5
    assert report.timed_out
    assert report.unprocessed_actors == [BOB]
    assert set(report.ledgers) == {ALICE}
    assert "ledger_builds_abandoned" in [c.args[0] for c in log.warning.call_args_list]


def test_storage_failure_keeps_cursor(config, first_page):
    """If transfers cannot be stored the cursor is not advanced."""
    store = MagicMock()
    store.load_cursor.return_value = {CONTRACT: "sig0"}
    store.save_transfers.side_effect = StorageError("disk full")
    with pytest.raises(StorageError):
        run_staking_reconciliation(FakeSource(first_page), config, store=store, now=T0)
    store.save_cursor.assert_not_called()
    store.save_ledgers.assert_not_called()


def test_contract_balance_check(config, first_page):
    report = run_staking_reconciliation(FakeSource(first_page), config, now=T0, contract_balance=120.0)
    check = report.contract_check
    assert not check.within_tolerance
    assert check.discrepancy == pytest.approx(25)
    assert report.to_dict()["contract_check"]["within_tolerance"] is False


def test_config_defaults_watch_contract():
    cfg = ReconciliationConfig(contract_address=CONTRACT, mint=MINT, workers=0)
    assert cfg.watch_addresses == (CONTRACT,)
    assert cfg.workers == 1


def _seed_snapshots(store):
    store.save_snapshot(1, [HolderSnapshot(ALICE, 1000.0, T0)])
    store.save_snapshot(2, [HolderSnapshot(ALICE, 0.0, T0 + 60), HolderSnapshot(BOB, 1000.0, T0 + 60)])


def test_snapshot_diff_uses_predecessor(store):
    _seed_snapshots(store)
    events = run_snapshot_diff(store, None, 2)
    (e,) = events
    assert (e.type, e.source_actor, e.dest_actor) == (HolderEventType.TRANSFER_BETWEEN, ALICE, BOB)
    assert e.snapshot_id == 2
    assert store.load_events(2) == events


def test_snapshot_diff_first_snapshot(store):
    _seed_snapshots(store)
    (e,) = run_snapshot_diff(store, None, 1)
    assert (e.type, e.dest_actor) == (HolderEventType.NEW_HOLDER, ALICE)


def test_snapshot_diff_unknown_id(store):
    _seed_snapshots(store)
    with pytest.raises(SnapshotNotFoundError):
        run_snapshot_diff(store, None, 9)
    with pytest.raises(SnapshotNotFoundError):
        run_snapshot_diff(store, 9, 2)


def test_main_diff(clean_env, tmp_path, store):
    """CLI diff against the DB named by STAKEWATCH_DB_PATH."""
    _seed_snapshots(store)
    clean_env.setenv("STAKEWATCH_DB_PATH", str(tmp_path / "stakewatch.db"))
    assert main(["diff", "--current", "2"]) == 0
    assert len(store.load_events(2)) == 1
    assert main(["diff", "--current", "7"]) == 1


def test_main_staking_requires_target(clean_env, tmp_path):
    clean_env.setenv("STAKEWATCH_DB_PATH", str(tmp_path / "stakewatch.db"))
    assert main(["staking"]) == 1

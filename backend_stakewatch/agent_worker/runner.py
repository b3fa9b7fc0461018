"""
Reconciliation runs: staking ledgers from chain data, holder events from snapshots.

run_staking_reconciliation: fetch new contract transactions -> match transfers
-> persist transfer history -> rebuild every actor's ledger in parallel ->
persist ledgers -> advance the fetch cursor. The cursor moves only after
everything before it was stored, so a failed run is simply repeated.

run_snapshot_diff: load two stored snapshots, diff them, replace the stored
events of the newer one.

Usage: python -m backend_stakewatch.agent_worker.runner staking
       python -m backend_stakewatch.agent_worker.runner diff --current 12 [--previous 11]
"""

from __future__ import annotations

import argparse
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from concurrent.futures import wait
from dataclasses import dataclass, field
from typing import Any

from backend_stakewatch.analysis_engine.identity_cluster import (
    GroupLookup,
    IdentityDirectory,
    load_identity_directory,
)
from backend_stakewatch.analysis_engine.matcher import MatcherConfig, collect_transfers
from backend_stakewatch.config.settings import DEFAULT_LEDGER_WORKERS, Settings, get_settings
from backend_stakewatch.core.exceptions import SnapshotNotFoundError, StakewatchError
from backend_stakewatch.database.database import SnapshotStore, get_database
from backend_stakewatch.snapshots.engine import DiffConfig, diff_snapshots
from backend_stakewatch.snapshots.models import HolderEvent
from backend_stakewatch.solana_listener.listener import RpcTransactionSource, TransactionPage, TransactionSource
from backend_stakewatch.solana_listener.models import TransferRecord, UnmatchedDelta
from backend_stakewatch.staking.engine import (
    DEFAULT_STAKING_PERIOD_SEC,
    build_ledger,
    group_transfers_by_actor,
    reconcile_contract_balance,
    summarize_ledgers,
)
from backend_stakewatch.staking.models import ActorLedger, ContractReconciliation, StakeSummary
from backend_stakewatch.stakewatch_logging import get_logger, run_context

logger = get_logger(__name__)


@dataclass
class ReconciliationConfig:
    """
    Config for one staking reconciliation run.

    contract_address: staking contract (owner of the contract token accounts).
    mint: tracked SPL token mint.
    watch_addresses: addresses whose signatures are fetched; defaults to the contract.
    workers: parallel ledger builds.
    deadline_sec: wall-clock bound for the run; None means no bound.
    balance_tolerance: allowed |contract balance - ledger total| when a contract
        balance is supplied.
    """

    contract_address: str
    mint: str
    staking_period_sec: int = DEFAULT_STAKING_PERIOD_SEC
    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    watch_addresses: tuple[str, ...] = ()
    workers: int = DEFAULT_LEDGER_WORKERS
    deadline_sec: float | None = None
    balance_tolerance: float = 1.0

    def __post_init__(self) -> None:
        self.workers = max(1, int(self.workers))
        if not self.watch_addresses:
            self.watch_addresses = (self.contract_address,)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconciliationConfig":
        contract, mint = settings.require_staking_target()
        return cls(
            contract_address=contract,
            mint=mint,
            staking_period_sec=settings.staking_period_sec,
            matcher=MatcherConfig(
                epsilon=settings.match_epsilon,
                relative_tolerance=settings.match_relative_tolerance,
            ),
            workers=settings.ledger_workers,
            deadline_sec=settings.run_deadline_sec,
        )


@dataclass
class ReconciliationReport:
    """
    Outcome of one run.

    ledgers: every actor whose ledger was rebuilt before the deadline.
    unprocessed_actors: actors left out because the deadline passed (timed_out).
    unmatched: contract deltas of this run's transactions without a counterpart.
    """

    ledgers: dict[str, ActorLedger]
    summary: StakeSummary
    unmatched: list[UnmatchedDelta] = field(default_factory=list)
    unprocessed_actors: list[str] = field(default_factory=list)
    timed_out: bool = False
    cursor: dict[str, str] = field(default_factory=dict)
    new_transfers: int = 0
    contract_check: ContractReconciliation | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "actors": len(self.ledgers),
            "actors_with_shortfall": sorted(a for a, lg in self.ledgers.items() if lg.has_shortfall),
            "unmatched": [u.to_dict() for u in self.unmatched],
            "unprocessed_actors": list(self.unprocessed_actors),
            "timed_out": self.timed_out,
            "new_transfers": self.new_transfers,
            "contract_check": self.contract_check.to_dict() if self.contract_check else None,
        }


def _remaining(started: float, deadline_sec: float | None) -> float | None:
    if deadline_sec is None:
        return None
    return max(0.0, deadline_sec - (time.monotonic() - started))


def _build_ledgers_parallel(
    history: dict[str, list[TransferRecord]],
    now: int,
    config: ReconciliationConfig,
    timeout: float | None,
) -> tuple[dict[str, ActorLedger], list[str]]:
    """One build_ledger task per actor; actors not done by `timeout` are returned as unprocessed."""
    if not history:
        return {}, []
    if timeout is not None and timeout <= 0:
        return {}, sorted(history)
    executor = ThreadPoolExecutor(max_workers=config.workers)
    try:
        futures = {
            executor.submit(build_ledger, actor, records, now, config.staking_period_sec): actor
            for actor, records in history.items()
        }
        done, not_done = wait(futures, timeout=timeout)
        ledgers: dict[str, ActorLedger] = {}
        for fut in done:
            ledgers[futures[fut]] = fut.result()
        unprocessed = sorted(futures[f] for f in not_done)
    finally:
        # Queued builds are cancelled; running ones are not joined. They are pure, so
        # their threads finish on their own and the results are dropped.
        executor.shutdown(wait=False, cancel_futures=True)
    if unprocessed:
        logger.warning("ledger_builds_abandoned", unprocessed=len(unprocessed), completed=len(ledgers))
    return dict(sorted(ledgers.items())), unprocessed


def _fetch_page(
    source: TransactionSource,
    addresses: list[str],
    cursor: dict[str, str],
    started: float,
    deadline_sec: float | None,
) -> TransactionPage | None:
    """
    source.fetch_transactions bounded by the run deadline; None when it passes first.

    The source is told the deadline so it can stop starting requests. A fetch
    still running when the deadline passes is not joined: its thread finishes
    on its own and the page is discarded.
    """
    if deadline_sec is None:
        return source.fetch_transactions(addresses, cursor)
    timeout = _remaining(started, deadline_sec)
    if timeout <= 0:
        return None
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(source.fetch_transactions, addresses, cursor, deadline=started + deadline_sec)
        return future.result(timeout=timeout)
    except FuturesTimeoutError:
        return None
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def _fetch_timed_out_report(
    store: SnapshotStore | None,
    cursor: dict[str, str],
    deadline_sec: float | None,
) -> ReconciliationReport:
    """Nothing fetched in time: every known actor is unprocessed and nothing is stored."""
    actors = sorted(group_transfers_by_actor(store.load_transfers())) if store is not None else []
    logger.warning(
        "reconciliation_deadline_exceeded",
        stage="fetch",
        deadline_sec=deadline_sec,
        unprocessed=len(actors),
    )
    return ReconciliationReport(
        ledgers={},
        summary=summarize_ledgers([]),
        unprocessed_actors=actors,
        timed_out=True,
        cursor=dict(cursor),
    )


def run_staking_reconciliation(
    source: TransactionSource,
    config: ReconciliationConfig,
    *,
    store: SnapshotStore | None = None,
    now: int | None = None,
    deadline_sec: float | None = None,
    incremental: bool = True,
    contract_balance: float | None = None,
) -> ReconciliationReport:
    """
    Rebuild every actor's stake ledger from the staking contract's history.

    store: when given, transfers are appended to the stored history, ledgers are
        rebuilt from the full stored history and saved, and the fetch cursor is
        advanced last. Without a store only this fetch's transfers are used.
    incremental: resume from the stored cursor; False refetches everything.
    deadline_sec: overrides config.deadline_sec; bounds the fetch and the ledger
        builds. If the fetch is not done in time nothing is stored and every
        actor of the stored history is reported unprocessed.
    contract_balance: the contract's actual token balance, compared with the
        ledger total.

    StorageError and TransactionFetchError propagate; the cursor is not advanced.
    """
    started = time.monotonic()
    now = int(time.time()) if now is None else now
    deadline = deadline_sec if deadline_sec is not None else config.deadline_sec

    cursor = store.load_cursor() if (store is not None and incremental) else {}
    page = _fetch_page(source, list(config.watch_addresses), cursor, started, deadline)
    if page is None:
        return _fetch_timed_out_report(store, cursor, deadline)
    matched = collect_transfers(page.transactions, config.contract_address, config.mint, config=config.matcher)

    new_transfers = len(matched.transfers)
    if store is not None:
        new_transfers = store.save_transfers(matched.transfers)
        records = store.load_transfers()
    else:
        records = matched.transfers

    history = group_transfers_by_actor(records)
    ledgers, unprocessed = _build_ledgers_parallel(history, now, config, _remaining(started, deadline))
    timed_out = bool(unprocessed)
    if timed_out:
        logger.warning(
            "reconciliation_deadline_exceeded",
            stage="ledgers",
            deadline_sec=deadline,
            completed=len(ledgers),
            unprocessed=len(unprocessed),
        )

    if store is not None:
        store.save_ledgers(ledgers)
        store.save_cursor(page.cursor)

    summary = summarize_ledgers(ledgers.values())
    check = None
    if contract_balance is not None:
        check = reconcile_contract_balance(summary, contract_balance, tolerance=config.balance_tolerance)

    report = ReconciliationReport(
        ledgers=ledgers,
        summary=summary,
        unmatched=matched.unmatched,
        unprocessed_actors=unprocessed,
        timed_out=timed_out,
        cursor=dict(page.cursor),
        new_transfers=new_transfers,
        contract_check=check,
    )
    logger.info(
        "reconciliation_complete",
        transactions=len(page.transactions),
        new_transfers=new_transfers,
        actors=len(ledgers),
        total_staked=summary.total_staked,
        total_shortfall=summary.total_shortfall,
        unmatched=len(matched.unmatched),
        timed_out=timed_out,
        elapsed_sec=round(time.monotonic() - started, 3),
    )
    return report


def _previous_snapshot_id(store: SnapshotStore, snapshot_id: int) -> int | None:
    ids = [s.snapshot_id for s in store.list_snapshots()]
    if snapshot_id not in ids:
        raise SnapshotNotFoundError(snapshot_id)
    pos = ids.index(snapshot_id)
    return ids[pos - 1] if pos > 0 else None


def run_snapshot_diff(
    store: SnapshotStore,
    previous_id: int | None,
    current_id: int,
    directory: IdentityDirectory | GroupLookup | None = None,
    config: DiffConfig | None = None,
) -> list[HolderEvent]:
    """
    Diff two stored snapshots and store the events under current_id.

    previous_id None means the snapshot taken just before current_id; when there
    is none every current holder is new. Re-running replaces the stored events.
    """
    if previous_id is None:
        previous_id = _previous_snapshot_id(store, current_id)
    previous = store.load_snapshot(previous_id) if previous_id is not None else []
    current = store.load_snapshot(current_id)
    events = diff_snapshots(previous, current, directory, snapshot_id=current_id, config=config)
    store.save_events(current_id, events)
    logger.info(
        "snapshot_events_saved",
        snapshot_id=current_id,
        previous_snapshot_id=previous_id,
        events=len(events),
    )
    return events


def _source_from_settings(settings: Settings) -> RpcTransactionSource:
    return RpcTransactionSource(
        settings.rpc_url,
        batch_size=settings.fetch_batch_size,
        batch_delay_sec=settings.fetch_batch_delay_sec,
        max_retries=settings.fetch_max_retries,
        request_timeout_sec=settings.rpc_timeout_sec,
    )


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint: settings from env, one run, JSON-ish summary in the logs."""
    parser = argparse.ArgumentParser(description="Staking ledger and holder snapshot reconciliation")
    sub = parser.add_subparsers(dest="command", required=True)
    staking = sub.add_parser("staking", help="Rebuild stake ledgers from chain data")
    staking.add_argument("--full", action="store_true", help="Ignore the stored cursor and refetch everything")
    staking.add_argument("--check-balance", action="store_true", help="Compare ledger total with the contract balance")
    diff = sub.add_parser("diff", help="Diff two stored holder snapshots")
    diff.add_argument("--current", type=int, required=True)
    diff.add_argument("--previous", type=int, default=None)
    args = parser.parse_args(argv)

    with run_context(command=args.command):
        return _run_command(args)


def _run_command(args: argparse.Namespace) -> int:
    try:
        settings = get_settings()
        db = get_database(settings.db_path)
        if args.command == "staking":
            config = ReconciliationConfig.from_settings(settings)
            source = _source_from_settings(settings)
            balance = None
            if args.check_balance:
                balance = source.get_token_balance(config.contract_address, config.mint)
            report = run_staking_reconciliation(
                source, config, store=db, incremental=not args.full, contract_balance=balance
            )
            logger.info("reconciliation_report", **report.to_dict())
            return 0 if not report.timed_out else 2
        directory = load_identity_directory(settings.identity_groups_path)
        events = run_snapshot_diff(
            db,
            args.previous,
            args.current,
            directory,
            DiffConfig(tolerance_pct=settings.diff_tolerance_pct),
        )
        logger.info("snapshot_diff_report", snapshot_id=args.current, events=len(events))
        return 0
    except KeyboardInterrupt:
        logger.info("runner_shutdown_signal")
        return 0
    except StakewatchError as e:
        logger.error("runner_failed", error=str(e), error_type=type(e).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(main())

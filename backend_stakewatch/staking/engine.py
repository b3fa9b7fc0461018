"""
Stake ledger engine: FIFO lot accounting over an actor's transfer history.

A ledger is a pure function of (actor, ordered transfers, now, staking period).
It is rebuilt from scratch on every run instead of being mutated incrementally,
so re-running is safe and two builds of the same history compare equal.

Per actor:
- deposit    -> new lot, unlock = deposit time + staking period
- withdrawal -> consume oldest lots first; lots reaching zero are dropped
- withdrawal larger than all open lots -> ShortfallRecord for the excess;
  later deposits open lots normally and are not offset by the shortfall
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterable, Mapping

from backend_stakewatch.analysis_engine.tolerance import DUST_THRESHOLD
from backend_stakewatch.config.settings import DEFAULT_STAKING_PERIOD_DAYS, SECONDS_PER_DAY
from backend_stakewatch.solana_listener.models import TransferDirection, TransferRecord
from backend_stakewatch.staking.models import (
    ActorLedger,
    ContractReconciliation,
    ShortfallRecord,
    StakeLot,
    StakeSummary,
    UnlockBucket,
)
from backend_stakewatch.stakewatch_logging import bind_actor, get_logger

logger = get_logger(__name__)

DEFAULT_STAKING_PERIOD_SEC = DEFAULT_STAKING_PERIOD_DAYS * SECONDS_PER_DAY

# Same-second deposit is applied before a withdrawal so it can be consumed.
_DIRECTION_ORDER = {TransferDirection.DEPOSIT: 0, TransferDirection.WITHDRAWAL: 1}


def _replay_order(history: list[TransferRecord]) -> list[TransferRecord]:
    indexed = list(enumerate(history))
    indexed.sort(key=lambda p: (p[1].timestamp, _DIRECTION_ORDER[p[1].direction], p[0]))
    return [r for _, r in indexed]


def _consume_fifo(lots: list[StakeLot], amount: float) -> float:
    """Withdraw amount from the oldest lots first; return the uncovered remainder."""
    remaining = amount
    while remaining > 0 and lots:
        oldest = lots[0]
        take = min(oldest.remaining_amount, remaining)
        oldest.remaining_amount -= take
        remaining -= take
        if oldest.remaining_amount <= DUST_THRESHOLD:
            lots.pop(0)
    return remaining if remaining > DUST_THRESHOLD else 0.0


def build_ledger(
    actor: str,
    transfer_history: Iterable[TransferRecord],
    now: int,
    staking_period: int = DEFAULT_STAKING_PERIOD_SEC,
) -> ActorLedger:
    """
    Replay an actor's transfers in timestamp order and return the resulting ledger.

    now: evaluation time (Unix seconds) for lot lock status.
    staking_period: lock duration in seconds.

    Raises ValueError for records of another actor or non-positive amounts.
    """
    if staking_period < 0:
        raise ValueError("staking_period must be >= 0")
    history = list(transfer_history)
    for r in history:
        if r.actor != actor:
            raise ValueError(f"transfer {r.tx_signature} belongs to {r.actor}, not {actor}")
        if r.amount <= 0:
            raise ValueError(f"transfer {r.tx_signature} has non-positive amount {r.amount}")

    log = bind_actor(actor)
    lots: list[StakeLot] = []
    shortfalls: list[ShortfallRecord] = []
    for record in _replay_order(history):
        if record.direction is TransferDirection.DEPOSIT:
            lots.append(
                StakeLot(
                    actor=actor,
                    original_amount=record.amount,
                    remaining_amount=record.amount,
                    deposit_timestamp=record.timestamp,
                    unlock_timestamp=record.timestamp + staking_period,
                    tx_signature=record.tx_signature,
                )
            )
            continue
        uncovered = _consume_fifo(lots, record.amount)
        if uncovered > 0:
            shortfalls.append(
                ShortfallRecord(timestamp=record.timestamp, tx_signature=record.tx_signature, amount=uncovered)
            )
            log.warning(
                "ledger_unexplained_withdrawal",
                tx_signature=record.tx_signature,
                withdrawal=record.amount,
                shortfall=uncovered,
            )

    ledger = ActorLedger(
        actor=actor,
        lots=[replace(lot, locked=lot.unlock_timestamp > now) for lot in lots],
        shortfalls=shortfalls,
        evaluated_at=now,
    )
    log.debug(
        "ledger_built",
        transfers=len(history),
        lot_count=len(ledger.lots),
        total_staked=ledger.total_staked,
        shortfall=ledger.shortfall,
    )
    return ledger


def group_transfers_by_actor(records: Iterable[TransferRecord]) -> dict[str, list[TransferRecord]]:
    """Split a mixed transfer stream per actor, keeping input order within each actor."""
    grouped: dict[str, list[TransferRecord]] = defaultdict(list)
    for r in records:
        grouped[r.actor].append(r)
    return dict(grouped)


def build_ledgers(
    records: Iterable[TransferRecord],
    now: int,
    staking_period: int = DEFAULT_STAKING_PERIOD_SEC,
) -> dict[str, ActorLedger]:
    """Build every actor's ledger sequentially (see agent_worker.runner for the parallel run)."""
    return {
        actor: build_ledger(actor, history, now, staking_period)
        for actor, history in sorted(group_transfers_by_actor(records).items())
    }


def summarize_ledgers(ledgers: Iterable[ActorLedger]) -> StakeSummary:
    """Sum staked/locked/unlocked/shortfall over all ledgers."""
    total_locked = 0.0
    total_unlocked = 0.0
    total_shortfall = 0.0
    active = 0
    for ledger in ledgers:
        total_locked += ledger.total_locked
        total_unlocked += ledger.total_unlocked
        total_shortfall += ledger.shortfall
        if ledger.lots:
            active += 1
    return StakeSummary(
        total_staked=total_locked + total_unlocked,
        total_locked=total_locked,
        total_unlocked=total_unlocked,
        total_shortfall=total_shortfall,
        actor_count=active,
    )


def rank_ledgers(
    ledgers: Iterable[ActorLedger],
    *,
    search: str | None = None,
    limit: int | None = None,
    include_empty: bool = False,
) -> list[ActorLedger]:
    """
    Ledgers sorted by total staked (descending, then actor).

    search: case-insensitive substring of the actor address.
    limit: keep at most this many (ignored when None or <= 0).
    include_empty: keep actors with no open lots (e.g. shortfall-only).
    """
    items = [lg for lg in ledgers if include_empty or lg.lots]
    if search and search.strip():
        term = search.strip().lower()
        items = [lg for lg in items if term in lg.actor.lower()]
    items.sort(key=lambda lg: (-lg.total_staked, lg.actor))
    if limit is not None and limit > 0:
        items = items[:limit]
    return items


def _utc_date(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


def unlock_schedule(
    ledgers: Iterable[ActorLedger] | Mapping[str, ActorLedger],
    *,
    now: int,
    actor: str | None = None,
) -> list[UnlockBucket]:
    """
    Remaining stake grouped by UTC unlock date, from the date of `now` onwards.

    actor: restrict to one actor's ledger. No data yields an empty list.
    """
    values = ledgers.values() if isinstance(ledgers, Mapping) else ledgers
    today = _utc_date(now)
    buckets: dict[str, float] = defaultdict(float)
    for ledger in values:
        if actor is not None and ledger.actor != actor:
            continue
        for lot in ledger.lots:
            day = _utc_date(lot.unlock_timestamp)
            if day >= today:
                buckets[day] += lot.remaining_amount
    return [UnlockBucket(date=d, amount=buckets[d]) for d in sorted(buckets)]


def reconcile_contract_balance(
    summary: StakeSummary,
    contract_balance: float,
    *,
    tolerance: float = 1.0,
) -> ContractReconciliation:
    """Compare ledger total with the contract's on-chain balance; warn when they diverge."""
    discrepancy = contract_balance - summary.total_staked
    ok = abs(discrepancy) <= tolerance
    if not ok:
        logger.warning(
            "ledger_contract_balance_mismatch",
            calculated=summary.total_staked,
            actual=contract_balance,
            discrepancy=discrepancy,
            total_shortfall=summary.total_shortfall,
        )
    return ContractReconciliation(
        calculated=summary.total_staked,
        actual=contract_balance,
        discrepancy=discrepancy,
        within_tolerance=ok,
    )

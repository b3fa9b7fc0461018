"""
Snapshot differ: two holder snapshot sets -> HolderEvents.

Fungible positions:
1. Per actor, a change above min_change is an increase (new when there was no
   prior balance) or a decrease (emptied when nothing is left).
2. Decreases, largest first, are paired with an unconsumed increase whose
   magnitude is within tolerance_pct of the decrease -> transfer_between.
   Candidates in the same identity group are preferred; the group only gates
   the pairing when require_same_group is set.
3. Leftover increases -> new_holder / transfer_in; leftover decreases ->
   wallet_empty / transfer_out.

NFT positions are compared per asset id: changed owner -> transfer_between,
previous-only -> wallet_empty, current-only -> new_holder.

Output order is deterministic: transfer_between in pairing order, then
new_holder, transfer_in, transfer_out, wallet_empty (each by actor), then NFT
events by asset id.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

from backend_stakewatch.analysis_engine.identity_cluster import (
    GroupLookup,
    IdentityDirectory,
    resolve_group_lookup,
    same_group,
)
from backend_stakewatch.analysis_engine.tolerance import (
    DUST_THRESHOLD,
    best_candidate,
    magnitude_gap,
    within_relative,
)
from backend_stakewatch.core.exceptions import MalformedSnapshotError
from backend_stakewatch.snapshots.models import HolderEvent, HolderEventType, HolderSnapshot
from backend_stakewatch.stakewatch_logging import get_logger

logger = get_logger(__name__)


@dataclass
class DiffConfig:
    """
    tolerance_pct: max |decrease - increase| as a fraction of the decrease (inclusive).
    min_change: balance changes at or below this are ignored as dust.
    prefer_same_group: rank same-group candidates first.
    require_same_group: only pair wallets of one identity group.
    tracked_only: ignore fungible changes of wallets without an identity group.
    """

    tolerance_pct: float = 0.01
    min_change: float = DUST_THRESHOLD
    prefer_same_group: bool = True
    require_same_group: bool = False
    tracked_only: bool = False


@dataclass
class _Change:
    actor: str
    magnitude: float
    previous: float
    current: float
    timestamp: int
    boundary: bool
    """increase: no prior balance (new holder); decrease: nothing left (emptied)."""


def _check_position(s: HolderSnapshot, label: str) -> None:
    if not isinstance(s.actor, str) or not s.actor:
        raise MalformedSnapshotError(f"{label} snapshot has an empty actor")
    if s.timestamp is None or isinstance(s.timestamp, bool) or not isinstance(s.timestamp, int):
        raise MalformedSnapshotError(f"{label} snapshot for {s.actor} has no timestamp", actor=s.actor)
    pos = s.asset_position
    if isinstance(pos, (frozenset, set)):
        for asset_id in pos:
            if not isinstance(asset_id, str) or not asset_id:
                raise MalformedSnapshotError(f"{label} snapshot for {s.actor} has an empty asset id", actor=s.actor)
        return
    if isinstance(pos, bool) or not isinstance(pos, (int, float)):
        raise MalformedSnapshotError(
            f"{label} snapshot for {s.actor} has unsupported position {type(pos).__name__}", actor=s.actor
        )
    if math.isnan(pos) or math.isinf(pos):
        raise MalformedSnapshotError(f"{label} snapshot for {s.actor} has non-finite balance", actor=s.actor)
    if pos < 0:
        raise MalformedSnapshotError(f"{label} snapshot for {s.actor} has negative balance {pos}", actor=s.actor)


def validate_snapshots(snapshots: Iterable[HolderSnapshot], label: str = "snapshot") -> list[HolderSnapshot]:
    """
    Reject malformed input before diffing.

    Raises MalformedSnapshotError on a missing timestamp, negative or non-finite
    balance, empty asset id, an actor listed twice for the same position kind,
    or one asset id owned by two actors.
    """
    items = list(snapshots)
    fungible_actors: set[str] = set()
    nft_actors: set[str] = set()
    asset_owner: dict[str, str] = {}
    for s in items:
        _check_position(s, label)
        seen = fungible_actors if s.is_fungible else nft_actors
        if s.actor in seen:
            raise MalformedSnapshotError(f"{label} lists {s.actor} twice", actor=s.actor)
        seen.add(s.actor)
        if s.is_fungible:
            continue
        for asset_id in s.asset_position:
            owner = asset_owner.get(asset_id)
            if owner is not None:
                raise MalformedSnapshotError(
                    f"{label} asset {asset_id} owned by both {owner} and {s.actor}", actor=s.actor
                )
            asset_owner[asset_id] = s.actor
    return items


def _fungible_changes(
    previous: list[HolderSnapshot],
    current: list[HolderSnapshot],
    lookup: GroupLookup,
    cfg: DiffConfig,
) -> tuple[list[_Change], list[_Change]]:
    prev = {s.actor: s for s in previous if s.is_fungible}
    cur = {s.actor: s for s in current if s.is_fungible}
    increases: list[_Change] = []
    decreases: list[_Change] = []
    for actor in sorted(set(prev) | set(cur)):
        p = float(prev[actor].asset_position) if actor in prev else 0.0
        c = float(cur[actor].asset_position) if actor in cur else 0.0
        delta = c - p
        if abs(delta) <= cfg.min_change:
            continue
        if cfg.tracked_only and lookup(actor) is None:
            continue
        ts = cur[actor].timestamp if actor in cur else prev[actor].timestamp
        if delta > 0:
            increases.append(_Change(actor, delta, p, c, ts, boundary=p <= cfg.min_change))
        else:
            decreases.append(_Change(actor, -delta, p, c, ts, boundary=c <= cfg.min_change))
    return increases, decreases


def _pair_transfers(
    increases: list[_Change],
    decreases: list[_Change],
    lookup: GroupLookup,
    cfg: DiffConfig,
    snapshot_id: int | None,
    timestamp: int,
) -> tuple[list[HolderEvent], set[int], set[int]]:
    events: list[HolderEvent] = []
    used_inc: set[int] = set()
    used_dec: set[int] = set()
    order = sorted(range(len(decreases)), key=lambda i: (-decreases[i].magnitude, decreases[i].actor))
    for di in order:
        dec = decreases[di]
        candidates = []
        for ii, inc in enumerate(increases):
            if ii in used_inc:
                continue
            if not within_relative(dec.magnitude, inc.magnitude, cfg.tolerance_pct):
                continue
            grouped = same_group(lookup, dec.actor, inc.actor)
            if cfg.require_same_group and not grouped:
                continue
            candidates.append((ii, grouped))

        def rank(pair: tuple[int, bool]) -> tuple[object, ...]:
            inc = increases[pair[0]]
            group_rank = 0 if (pair[1] or not cfg.prefer_same_group) else 1
            return (group_rank, magnitude_gap(dec.magnitude, inc.magnitude), inc.timestamp, inc.actor)

        chosen = best_candidate(candidates, rank)
        if chosen is None:
            continue
        ii, grouped = chosen
        inc = increases[ii]
        used_inc.add(ii)
        used_dec.add(di)
        events.append(
            HolderEvent(
                type=HolderEventType.TRANSFER_BETWEEN,
                source_actor=dec.actor,
                dest_actor=inc.actor,
                amount=dec.magnitude,
                snapshot_id=snapshot_id,
                timestamp=timestamp,
                previous_balance=dec.previous,
                new_balance=dec.current,
                same_group=grouped,
            )
        )
        logger.debug(
            "snapshot_transfer_paired",
            source=dec.actor,
            dest=inc.actor,
            decrease=dec.magnitude,
            increase=inc.magnitude,
            same_group=grouped,
        )
    return events, used_inc, used_dec


def _nft_events(
    previous: list[HolderSnapshot],
    current: list[HolderSnapshot],
    lookup: GroupLookup,
    snapshot_id: int | None,
    timestamp: int,
) -> list[HolderEvent]:
    prev_owner = {a: s.actor for s in previous if not s.is_fungible for a in s.asset_position}
    cur_owner = {a: s.actor for s in current if not s.is_fungible for a in s.asset_position}
    events: list[HolderEvent] = []
    for asset_id in sorted(set(prev_owner) | set(cur_owner)):
        old = prev_owner.get(asset_id)
        new = cur_owner.get(asset_id)
        if old == new:
            continue
        if old is not None and new is not None:
            event_type = HolderEventType.TRANSFER_BETWEEN
        elif old is not None:
            event_type = HolderEventType.WALLET_EMPTY
        else:
            event_type = HolderEventType.NEW_HOLDER
        events.append(
            HolderEvent(
                type=event_type,
                source_actor=old,
                dest_actor=new,
                asset_id=asset_id,
                snapshot_id=snapshot_id,
                timestamp=timestamp,
                same_group=same_group(lookup, old, new),
            )
        )
    return events


def _event_timestamp(previous: list[HolderSnapshot], current: list[HolderSnapshot]) -> int:
    stamps = [s.timestamp for s in current] or [s.timestamp for s in previous]
    return max(stamps) if stamps else 0


def diff_snapshots(
    previous: Iterable[HolderSnapshot],
    current: Iterable[HolderSnapshot],
    group_lookup: IdentityDirectory | GroupLookup | None = None,
    *,
    snapshot_id: int | None = None,
    timestamp: int | None = None,
    config: DiffConfig | None = None,
) -> list[HolderEvent]:
    """
    Explain the change from previous to current as HolderEvents.

    group_lookup: IdentityDirectory, a wallet -> group_id callable, or None.
    snapshot_id / timestamp: stamped on every event; timestamp defaults to the
    latest current snapshot time.
    Raises MalformedSnapshotError on invalid input.
    """
    cfg = config or DiffConfig()
    prev_items = validate_snapshots(previous, "previous")
    cur_items = validate_snapshots(current, "current")
    lookup = resolve_group_lookup(group_lookup)
    ts = timestamp if timestamp is not None else _event_timestamp(prev_items, cur_items)

    increases, decreases = _fungible_changes(prev_items, cur_items, lookup, cfg)
    events, used_inc, used_dec = _pair_transfers(increases, decreases, lookup, cfg, snapshot_id, ts)

    leftovers: dict[HolderEventType, list[HolderEvent]] = {
        HolderEventType.NEW_HOLDER: [],
        HolderEventType.TRANSFER_IN: [],
        HolderEventType.TRANSFER_OUT: [],
        HolderEventType.WALLET_EMPTY: [],
    }
    for ii, inc in enumerate(increases):
        if ii in used_inc:
            continue
        kind = HolderEventType.NEW_HOLDER if inc.boundary else HolderEventType.TRANSFER_IN
        leftovers[kind].append(
            HolderEvent(
                type=kind,
                dest_actor=inc.actor,
                amount=inc.magnitude,
                snapshot_id=snapshot_id,
                timestamp=ts,
                previous_balance=inc.previous,
                new_balance=inc.current,
            )
        )
    for di, dec in enumerate(decreases):
        if di in used_dec:
            continue
        kind = HolderEventType.WALLET_EMPTY if dec.boundary else HolderEventType.TRANSFER_OUT
        leftovers[kind].append(
            HolderEvent(
                type=kind,
                source_actor=dec.actor,
                amount=dec.magnitude,
                snapshot_id=snapshot_id,
                timestamp=ts,
                previous_balance=dec.previous,
                new_balance=dec.current,
            )
        )
    # increases/decreases are built in actor order, so each bucket already is
    for bucket in leftovers.values():
        events.extend(bucket)

    events.extend(_nft_events(prev_items, cur_items, lookup, snapshot_id, ts))
    logger.info(
        "snapshot_diff_complete",
        snapshot_id=snapshot_id,
        previous_holders=len(prev_items),
        current_holders=len(cur_items),
        events=len(events),
        transfers_between=sum(1 for e in events if e.type is HolderEventType.TRANSFER_BETWEEN),
    )
    return events

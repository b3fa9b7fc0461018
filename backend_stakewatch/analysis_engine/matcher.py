"""
Counterparty matcher: staking-contract balance deltas to actor transfers.

Within one transaction, a contract-owned token account and an actor-owned token
account that moved in opposite directions by about the same amount form one
transfer:

- contract lost tokens, actor gained them  -> withdrawal (sized to the actor's gain)
- contract gained tokens, actor lost them  -> deposit (sized to the actor's loss)

Only the simple two-party case is caught. A contract delta without a plausible
counterpart is reported as an UnmatchedDelta and logged, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from backend_stakewatch.analysis_engine.tolerance import (
    best_candidate,
    magnitude_gap,
    within_absolute,
)
from backend_stakewatch.solana_listener.models import (
    BalanceObservation,
    TransferDirection,
    TransferRecord,
    UnmatchedDelta,
)
from backend_stakewatch.solana_listener.parser import (
    extract_observations,
    transaction_block_time,
    transaction_signature,
)
from backend_stakewatch.stakewatch_logging import get_logger
from backend_stakewatch.utils.wallet_utils import short_address

logger = get_logger(__name__)

REASON_NO_COUNTERPART = "no_counterpart"
REASON_MISSING_BLOCK_TIME = "missing_block_time"


@dataclass
class MatcherConfig:
    """
    Tolerance for pairing a contract delta with an actor delta.

    epsilon: absolute tolerance in token units (default 1 token).
    relative_tolerance: optional fraction of the contract delta; the effective
        tolerance is max(epsilon, relative_tolerance * |contract delta|).
    """

    epsilon: float = 1.0
    relative_tolerance: float = 0.0

    def tolerance_for(self, contract_delta: float) -> float:
        return max(self.epsilon, self.relative_tolerance * abs(contract_delta))


@dataclass
class MatchResult:
    """Transfers found plus contract deltas left unexplained."""

    transfers: list[TransferRecord] = field(default_factory=list)
    unmatched: list[UnmatchedDelta] = field(default_factory=list)

    def extend(self, other: "MatchResult") -> None:
        self.transfers.extend(other.transfers)
        self.unmatched.extend(other.unmatched)


def match_transfers(
    observations: list[BalanceObservation],
    contract_address: str,
    *,
    actor: str | None = None,
    config: MatcherConfig | None = None,
) -> MatchResult:
    """
    Pair contract-side and actor-side observations of one transaction.

    actor: when given, only that owner's observations are candidates; otherwise
    every non-contract owner is.
    Tie-break among candidates within tolerance: smallest magnitude difference,
    then earliest observation (transaction order). Each actor observation is used
    at most once.
    """
    cfg = config or MatcherConfig()
    result = MatchResult()
    contract_side = [o for o in observations if o.account_owner == contract_address]
    actor_side = [
        (i, o)
        for i, o in enumerate(observations)
        if o.account_owner != contract_address and (actor is None or o.account_owner == actor)
    ]
    consumed: set[int] = set()

    for leg, c in enumerate(contract_side):
        contract_delta = c.delta
        if contract_delta == 0:
            continue
        if c.block_time is None:
            result.unmatched.append(_unmatched(c, REASON_MISSING_BLOCK_TIME))
            continue
        # Actor must move opposite to the contract.
        wanted_sign = 1 if contract_delta < 0 else -1
        tolerance = cfg.tolerance_for(contract_delta)
        candidates = [
            (i, o)
            for i, o in actor_side
            if i not in consumed
            and o.delta * wanted_sign > 0
            and within_absolute(contract_delta, o.delta, tolerance)
        ]
        chosen = best_candidate(
            candidates, lambda pair: (magnitude_gap(contract_delta, pair[1].delta), pair[0])
        )
        if chosen is None:
            result.unmatched.append(_unmatched(c, REASON_NO_COUNTERPART))
            continue
        idx, obs = chosen
        consumed.add(idx)
        direction = TransferDirection.WITHDRAWAL if contract_delta < 0 else TransferDirection.DEPOSIT
        record = TransferRecord(
            timestamp=c.block_time,
            direction=direction,
            actor=obs.account_owner,
            amount=abs(obs.delta),
            tx_signature=c.tx_signature,
            leg=leg,
        )
        result.transfers.append(record)
        logger.debug(
            "transfer_matched",
            tx_signature=c.tx_signature,
            direction=direction.value,
            actor=obs.account_owner,
            amount=record.amount,
            contract_delta=contract_delta,
        )
    return result


def _unmatched(obs: BalanceObservation, reason: str) -> UnmatchedDelta:
    logger.warning(
        "transfer_unexplained",
        tx_signature=obs.tx_signature,
        contract_account=short_address(obs.account),
        delta=obs.delta,
        reason=reason,
    )
    return UnmatchedDelta(
        tx_signature=obs.tx_signature,
        block_time=obs.block_time,
        contract_account=obs.account,
        delta=obs.delta,
        reason=reason,
    )


def collect_transfers(
    raw_transactions: Iterable[dict[str, Any]],
    contract_address: str,
    mint: str,
    *,
    actor: str | None = None,
    config: MatcherConfig | None = None,
) -> MatchResult:
    """
    Run extractor + matcher over a batch of raw getTransaction results.

    Transactions are processed oldest first (block time, then signature); a
    signature seen twice is processed once.
    """
    ordered = sorted(
        (raw for raw in raw_transactions if isinstance(raw, dict)),
        key=lambda raw: (transaction_block_time(raw) or 0, transaction_signature(raw) or ""),
    )
    result = MatchResult()
    seen: set[str] = set()
    for raw in ordered:
        sig = transaction_signature(raw)
        if sig is not None:
            if sig in seen:
                continue
            seen.add(sig)
        observations = extract_observations(raw, mint)
        if not observations:
            continue
        result.extend(match_transfers(observations, contract_address, actor=actor, config=config))
    logger.info(
        "transfers_collected",
        transactions=len(ordered),
        transfers=len(result.transfers),
        unmatched=len(result.unmatched),
    )
    return result

"""
Data models for the stake ledger.

StakeLot (one deposit's unwithdrawn remainder), ShortfallRecord (withdrawal
volume that no open lot could cover), ActorLedger (an actor's lots and
shortfalls at one evaluation time) and the aggregates built from ledgers.
Totals are derived from the lots so they cannot drift from them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class StakeLot:
    """
    One deposit, reduced in place by FIFO withdrawals until it is dropped at zero.

    remaining_amount <= original_amount always.
    """

    actor: str
    original_amount: float
    remaining_amount: float
    deposit_timestamp: int
    unlock_timestamp: int
    locked: bool = True
    tx_signature: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "actor": self.actor,
            "original_amount": self.original_amount,
            "remaining_amount": self.remaining_amount,
            "deposit_timestamp": self.deposit_timestamp,
            "unlock_timestamp": self.unlock_timestamp,
            "locked": self.locked,
            "tx_signature": self.tx_signature,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StakeLot":
        return cls(
            actor=data["actor"],
            original_amount=float(data["original_amount"]),
            remaining_amount=float(data["remaining_amount"]),
            deposit_timestamp=int(data["deposit_timestamp"]),
            unlock_timestamp=int(data["unlock_timestamp"]),
            locked=bool(data["locked"]),
            tx_signature=data.get("tx_signature") or "",
        )


@dataclass(frozen=True)
class ShortfallRecord:
    """Part of one withdrawal that exceeded every open lot (unexplained withdrawal)."""

    timestamp: int
    tx_signature: str
    amount: float

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "tx_signature": self.tx_signature, "amount": self.amount}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShortfallRecord":
        return cls(
            timestamp=int(data["timestamp"]),
            tx_signature=data.get("tx_signature") or "",
            amount=float(data["amount"]),
        )


LEDGER_STATE_EMPTY = "empty"
LEDGER_STATE_ACTIVE = "active"


@dataclass
class ActorLedger:
    """
    An actor's open lots (oldest first) and shortfalls, evaluated at evaluated_at.

    total_staked == sum(lot.remaining_amount) == total_locked + total_unlocked.
    """

    actor: str
    lots: list[StakeLot] = field(default_factory=list)
    shortfalls: list[ShortfallRecord] = field(default_factory=list)
    evaluated_at: int = 0

    @property
    def total_locked(self) -> float:
        return sum(lot.remaining_amount for lot in self.lots if lot.locked)

    @property
    def total_unlocked(self) -> float:
        return sum(lot.remaining_amount for lot in self.lots if not lot.locked)

    @property
    def total_staked(self) -> float:
        return self.total_locked + self.total_unlocked

    @property
    def shortfall(self) -> float:
        """Total withdrawal volume not covered by tracked deposits."""
        return sum(s.amount for s in self.shortfalls)

    @property
    def has_shortfall(self) -> bool:
        return bool(self.shortfalls)

    @property
    def state(self) -> str:
        return LEDGER_STATE_ACTIVE if self.lots else LEDGER_STATE_EMPTY

    def to_dict(self) -> dict[str, Any]:
        return {
            "actor": self.actor,
            "evaluated_at": self.evaluated_at,
            "total_staked": self.total_staked,
            "total_locked": self.total_locked,
            "total_unlocked": self.total_unlocked,
            "shortfall": self.shortfall,
            "state": self.state,
            "lots": [lot.to_dict() for lot in self.lots],
            "shortfalls": [s.to_dict() for s in self.shortfalls],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActorLedger":
        return cls(
            actor=data["actor"],
            lots=[StakeLot.from_dict(d) for d in data.get("lots") or []],
            shortfalls=[ShortfallRecord.from_dict(d) for d in data.get("shortfalls") or []],
            evaluated_at=int(data.get("evaluated_at") or 0),
        )


@dataclass(frozen=True)
class StakeSummary:
    """Aggregate over many ActorLedgers."""

    total_staked: float
    total_locked: float
    total_unlocked: float
    total_shortfall: float
    actor_count: int
    """Actors with at least one open lot."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_staked": self.total_staked,
            "total_locked": self.total_locked,
            "total_unlocked": self.total_unlocked,
            "total_shortfall": self.total_shortfall,
            "actor_count": self.actor_count,
        }


@dataclass(frozen=True)
class UnlockBucket:
    """Remaining stake unlocking on one UTC date (YYYY-MM-DD)."""

    date: str
    amount: float


@dataclass(frozen=True)
class ContractReconciliation:
    """Ledger total vs the contract's actual token balance."""

    calculated: float
    actual: float
    discrepancy: float
    """actual - calculated; positive means tokens in the contract not attributed to any lot."""
    within_tolerance: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "calculated": self.calculated,
            "actual": self.actual,
            "discrepancy": self.discrepancy,
            "within_tolerance": self.within_tolerance,
        }

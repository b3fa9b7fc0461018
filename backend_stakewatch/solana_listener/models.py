"""
Data models for Solana transaction ingestion.

Responsibilities:
- SignatureInfo: one getSignaturesForAddress item (the unit the fetcher pages over).
- BalanceObservation: one token account's pre/post balance for the tracked mint.
- TransferRecord: a matched deposit into / withdrawal from the staking contract,
  expressed relative to the actor.
- UnmatchedDelta: a contract-side balance change the matcher could not explain.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class SignatureInfo:
    """
    Normalized transaction signature info from getSignaturesForAddress.

    Mirrors Solana RPC response fields.
    """

    signature: str
    slot: int
    err: Any  # None if success; dict/object from RPC if failed
    block_time: int | None  # Unix timestamp; None if not available
    memo: str | None
    confirmation_status: str | None  # processed | confirmed | finalized

    @classmethod
    def from_rpc_item(cls, item: dict[str, Any]) -> "SignatureInfo":
        """Build from a single getSignaturesForAddress result item."""
        return cls(
            signature=item["signature"],
            slot=int(item["slot"]),
            err=item.get("err"),
            block_time=item.get("blockTime"),
            memo=item.get("memo"),
            confirmation_status=item.get("confirmationStatus"),
        )


@dataclass(frozen=True)
class BalanceObservation:
    """
    Balance of the tracked mint in one token account, before and after one transaction.

    Derived per transaction and consumed immediately by the matcher; never persisted.
    """

    tx_signature: str
    block_time: int | None
    account_owner: str
    """Wallet (or program) that owns the token account."""
    pre_amount: float
    post_amount: float
    account: str = ""
    """Token account address; empty when it could not be resolved."""
    slot: int | None = None

    @property
    def delta(self) -> float:
        return self.post_amount - self.pre_amount


class TransferDirection(str, Enum):
    """Direction of a staking transfer, relative to the actor (not the contract)."""

    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


@dataclass(frozen=True)
class TransferRecord:
    """
    One matched staking transfer. amount is always positive.

    leg: position of the contract-side balance change within the transaction.
    A transaction moving tokens into two contract token accounts yields two
    records that differ only in leg.
    """

    timestamp: int
    direction: TransferDirection
    actor: str
    amount: float
    tx_signature: str
    leg: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "direction": self.direction.value,
            "actor": self.actor,
            "amount": self.amount,
            "tx_signature": self.tx_signature,
            "leg": self.leg,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransferRecord":
        return cls(
            timestamp=int(data["timestamp"]),
            direction=TransferDirection(data["direction"]),
            actor=data["actor"],
            amount=float(data["amount"]),
            tx_signature=data["tx_signature"],
            leg=int(data.get("leg") or 0),
        )


@dataclass(frozen=True)
class UnmatchedDelta:
    """
    Contract-side balance change with no actor-side counterpart within tolerance.

    Partial observability is expected (multi-leg transfers, fees), so these are
    reported and skipped rather than raised.
    """

    tx_signature: str
    block_time: int | None
    contract_account: str
    delta: float
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_signature": self.tx_signature,
            "block_time": self.block_time,
            "contract_account": self.contract_account,
            "delta": self.delta,
            "reason": self.reason,
        }

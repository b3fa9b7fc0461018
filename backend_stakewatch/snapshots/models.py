"""
Holder snapshot and holder event models.

A HolderSnapshot is one actor's position at capture time: a fungible token
balance (float) or the set of distinct asset ids (NFT mints) it owns. The
differ turns two snapshot sets into HolderEvents.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

AssetPosition = Union[float, frozenset]


@dataclass(frozen=True)
class HolderSnapshot:
    actor: str
    asset_position: AssetPosition
    timestamp: int | None

    @property
    def is_fungible(self) -> bool:
        return not isinstance(self.asset_position, (frozenset, set))

    def to_dict(self) -> dict[str, Any]:
        if self.is_fungible:
            position: Any = self.asset_position
        else:
            position = sorted(self.asset_position)
        return {"actor": self.actor, "asset_position": position, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HolderSnapshot":
        raw = data["asset_position"]
        position: AssetPosition = frozenset(raw) if isinstance(raw, (list, tuple, set)) else float(raw)
        ts = data.get("timestamp")
        return cls(actor=data["actor"], asset_position=position, timestamp=int(ts) if ts is not None else None)


class HolderEventType(str, Enum):
    NEW_HOLDER = "new_holder"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_BETWEEN = "transfer_between"
    WALLET_EMPTY = "wallet_empty"


@dataclass(frozen=True)
class HolderEvent:
    """
    One change between two snapshots. Append-only.

    Fungible events carry amount plus previous_balance/new_balance of the
    source wallet (or of the affected wallet for new_holder/transfer_in).
    NFT events carry asset_id instead of an amount.
    same_group is informative: both wallets resolved to the same identity group.
    """

    type: HolderEventType
    source_actor: str | None = None
    dest_actor: str | None = None
    amount: float | None = None
    asset_id: str | None = None
    snapshot_id: int | None = None
    timestamp: int = 0
    previous_balance: float | None = None
    new_balance: float | None = None
    same_group: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "source_actor": self.source_actor,
            "dest_actor": self.dest_actor,
            "amount": self.amount,
            "asset_id": self.asset_id,
            "snapshot_id": self.snapshot_id,
            "timestamp": self.timestamp,
            "previous_balance": self.previous_balance,
            "new_balance": self.new_balance,
            "same_group": self.same_group,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HolderEvent":
        return cls(
            type=HolderEventType(data["type"]),
            source_actor=data.get("source_actor"),
            dest_actor=data.get("dest_actor"),
            amount=data.get("amount"),
            asset_id=data.get("asset_id"),
            snapshot_id=data.get("snapshot_id"),
            timestamp=int(data.get("timestamp") or 0),
            previous_balance=data.get("previous_balance"),
            new_balance=data.get("new_balance"),
            same_group=bool(data.get("same_group")),
        )

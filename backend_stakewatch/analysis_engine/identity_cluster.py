"""
Wallet identity groups: wallets that belong to the same real-world holder.

The directory itself is maintained elsewhere (social-profile bookkeeping); this
module only reads it. The snapshot differ asks group_of(wallet) to tell an
internal move between one holder's wallets from a transfer to someone else.

Groups come from code (StaticIdentityDirectory) or a JSON file:

    [{"group_id": "alice", "wallets": ["<addr1>", "<addr2>"]}, ...]
    or {"alice": ["<addr1>", "<addr2>"], ...}
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol, Union

from backend_stakewatch.stakewatch_logging import get_logger
from backend_stakewatch.utils.wallet_utils import is_valid_wallet, short_address

logger = get_logger(__name__)


@dataclass(frozen=True)
class IdentityGroup:
    """
    Identity group: wallets controlled by one holder.

    group_id: directory key (e.g. social profile id).
    member_wallets: wallet addresses in the group.
    """

    group_id: str
    member_wallets: frozenset[str] = field(default_factory=frozenset)

    def to_dict(self) -> dict[str, Any]:
        return {"group_id": self.group_id, "wallets": sorted(self.member_wallets)}


class IdentityDirectory(Protocol):
    """Read-only wallet -> group lookup."""

    def group_of(self, wallet: str) -> str | None:
        ...


GroupLookup = Callable[[str], Union[str, None]]


class StaticIdentityDirectory:
    """In-memory directory built from IdentityGroups or a wallet -> group_id mapping."""

    def __init__(
        self,
        groups: Iterable[IdentityGroup] = (),
        *,
        wallet_to_group: Mapping[str, str] | None = None,
    ) -> None:
        self._by_wallet: dict[str, str] = {}
        for group in groups:
            for wallet in group.member_wallets:
                self._assign(wallet, group.group_id)
        for wallet, group_id in (wallet_to_group or {}).items():
            self._assign(wallet, group_id)

    def _assign(self, wallet: str, group_id: str) -> None:
        previous = self._by_wallet.get(wallet)
        if previous is not None and previous != group_id:
            logger.warning(
                "identity_wallet_reassigned",
                wallet=short_address(wallet),
                previous_group=previous,
                group_id=group_id,
            )
        self._by_wallet[wallet] = group_id

    def group_of(self, wallet: str) -> str | None:
        return self._by_wallet.get(wallet)

    def groups(self) -> list[IdentityGroup]:
        """All groups, sorted by group_id."""
        members: dict[str, set[str]] = {}
        for wallet, group_id in self._by_wallet.items():
            members.setdefault(group_id, set()).add(wallet)
        return [IdentityGroup(gid, frozenset(ws)) for gid, ws in sorted(members.items())]

    def __len__(self) -> int:
        return len(self._by_wallet)


def _groups_from_json(data: Any) -> list[IdentityGroup]:
    entries: list[tuple[str, list[Any]]] = []
    if isinstance(data, dict):
        entries = [(str(k), v) for k, v in data.items() if isinstance(v, list)]
    elif isinstance(data, list):
        for item in data:
            if isinstance(item, dict) and item.get("group_id") is not None:
                entries.append((str(item["group_id"]), list(item.get("wallets") or [])))
    groups: list[IdentityGroup] = []
    for group_id, wallets in entries:
        valid: set[str] = set()
        for w in wallets:
            w = str(w).strip()
            if not is_valid_wallet(w):
                logger.warning("identity_invalid_wallet_skipped", group_id=group_id, wallet=short_address(w))
                continue
            valid.add(w)
        if valid:
            groups.append(IdentityGroup(group_id, frozenset(valid)))
    return groups


def load_identity_directory(path: str | Path | None = None) -> StaticIdentityDirectory:
    """
    Load identity groups from JSON (path, or IDENTITY_GROUPS_PATH).

    A missing path yields an empty directory (every wallet ungrouped). Invalid
    addresses are skipped with a warning; malformed JSON raises ValueError.
    """
    path_str = str(path) if path is not None else os.getenv("IDENTITY_GROUPS_PATH", "").strip()
    if not path_str:
        return StaticIdentityDirectory()
    p = Path(path_str)
    if not p.is_file():
        logger.warning("identity_groups_file_missing", path=path_str)
        return StaticIdentityDirectory()
    with open(p, encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"identity groups file {path_str} is not valid JSON: {e}") from e
    groups = _groups_from_json(data)
    directory = StaticIdentityDirectory(groups)
    logger.info("identity_groups_loaded", path=path_str, groups=len(groups), wallets=len(directory))
    return directory


def resolve_group_lookup(lookup: IdentityDirectory | GroupLookup | None) -> GroupLookup:
    """Accept a directory object, a plain callable, or None (no groups)."""
    if lookup is None:
        return lambda wallet: None
    group_of = getattr(lookup, "group_of", None)
    if callable(group_of):
        return group_of
    if callable(lookup):
        return lookup
    raise TypeError(f"group lookup must be callable or expose group_of(), got {type(lookup).__name__}")


def same_group(lookup: GroupLookup, a: str | None, b: str | None) -> bool:
    """True when both wallets are grouped and share a group."""
    if not a or not b:
        return False
    ga = lookup(a)
    return ga is not None and ga == lookup(b)

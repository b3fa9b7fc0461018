"""
Solana transaction parser — raw getTransaction payloads to balance observations.

Projects meta.preTokenBalances / meta.postTokenBalances for one SPL mint into
BalanceObservation rows, one per token account whose balance changed. Purely
structural: no classification, no matching.
"""

from __future__ import annotations

from typing import Any

from backend_stakewatch.solana_listener.models import BalanceObservation
from backend_stakewatch.stakewatch_logging import get_logger

logger = get_logger(__name__)


def _get_message_and_meta(raw: dict[str, Any]) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
    """Return (transaction.message, meta) from getTransaction-style result."""
    tx_obj = raw.get("transaction")
    if not tx_obj or not isinstance(tx_obj, dict):
        return None, None
    message = tx_obj.get("message")
    if not message or not isinstance(message, dict):
        return None, None
    meta = raw.get("meta")
    if not isinstance(meta, dict):
        meta = None
    return message, meta


def _get_account_keys(
    message: dict[str, Any],
    meta: dict[str, Any] | None = None,
) -> list[str]:
    """
    Resolve accountKeys to a list of base58 strings (handles json vs jsonParsed).
    For versioned transactions, appends meta.loadedAddresses (writable + readonly).
    """
    keys = message.get("accountKeys") or []
    out = [k if isinstance(k, str) else (k.get("pubkey", "") if isinstance(k, dict) else "") for k in keys]
    loaded = (meta or {}).get("loadedAddresses") or {}
    for role in ("writable", "readonly"):
        for addr in loaded.get(role) or []:
            out.append(addr if isinstance(addr, str) else "")
    return out


def ui_token_amount(ui: dict[str, Any] | None) -> float:
    """
    Token balance in UI units from a uiTokenAmount / tokenAmount object. Prefer the
    raw integer amount scaled by decimals (exact), then uiAmount, then
    uiAmountString; missing values count as 0.
    """
    ui = ui or {}
    raw_amount = ui.get("amount")
    decimals = ui.get("decimals")
    if raw_amount is not None and decimals is not None:
        try:
            return int(raw_amount) / (10 ** int(decimals))
        except (TypeError, ValueError):
            pass
    if ui.get("uiAmount") is not None:
        return float(ui["uiAmount"])
    if ui.get("uiAmountString"):
        try:
            return float(ui["uiAmountString"])
        except ValueError:
            return 0.0
    return 0.0


def transaction_signature(raw: dict[str, Any]) -> str | None:
    """First signature of a getTransaction result, or None."""
    tx_obj = raw.get("transaction")
    if not isinstance(tx_obj, dict):
        return None
    sigs = tx_obj.get("signatures") or []
    return sigs[0] if isinstance(sigs, list) and sigs else None


def transaction_block_time(raw: dict[str, Any]) -> int | None:
    """blockTime as int seconds, or None when absent/unparseable."""
    ts = raw.get("blockTime")
    if ts is None:
        return None
    try:
        return int(ts)
    except (TypeError, ValueError):
        return None


def transaction_failed(raw: dict[str, Any]) -> bool:
    """True if the transaction carries an execution error (meta.err)."""
    meta = raw.get("meta")
    return isinstance(meta, dict) and meta.get("err") is not None


def extract_observations(raw: dict[str, Any], mint: str) -> list[BalanceObservation]:
    """
    Project one getTransaction (jsonParsed or json) result into BalanceObservations.

    One observation per token account of `mint` whose balance changed, ordered by
    account index. Failed transactions, transactions that never touch `mint`, and
    unparseable payloads yield an empty list.
    """
    if not isinstance(raw, dict) or transaction_failed(raw):
        return []
    message, meta = _get_message_and_meta(raw)
    if message is None or meta is None:
        logger.debug("parser_skip_unparseable", signature=transaction_signature(raw))
        return []

    signature = transaction_signature(raw) or ""
    block_time = transaction_block_time(raw)
    slot = raw.get("slot")
    account_keys = _get_account_keys(message, meta)

    # accountIndex -> (owner, pre, post)
    balances: dict[int, list[Any]] = {}
    for side, entries in (("pre", meta.get("preTokenBalances")), ("post", meta.get("postTokenBalances"))):
        for entry in entries or []:
            if not isinstance(entry, dict) or entry.get("mint") != mint:
                continue
            try:
                idx = int(entry["accountIndex"])
            except (KeyError, TypeError, ValueError):
                continue
            row = balances.setdefault(idx, [None, 0.0, 0.0])
            owner = entry.get("owner")
            if owner:
                row[0] = owner
            row[1 if side == "pre" else 2] = ui_token_amount(entry.get("uiTokenAmount"))

    observations: list[BalanceObservation] = []
    for idx in sorted(balances):
        owner, pre, post = balances[idx]
        if post == pre:
            continue
        if not owner:
            logger.debug("parser_skip_unowned_account", signature=signature, account_index=idx)
            continue
        observations.append(
            BalanceObservation(
                tx_signature=signature,
                block_time=block_time,
                account_owner=owner,
                pre_amount=pre,
                post_amount=post,
                account=account_keys[idx] if 0 <= idx < len(account_keys) else "",
                slot=int(slot) if slot is not None else None,
            )
        )
    return observations


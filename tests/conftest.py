"""
Pytest fixtures for Stakewatch tests. Uses a temporary SQLite DB per test and a
builder for getTransaction-style payloads.
"""

from __future__ import annotations

from typing import Any

import pytest

STAKE_ENV_VARS = (
    "SOLANA_NETWORK",
    "SOLANA_RPC_URL",
    "HELIUS_API_KEY",
    "STAKING_CONTRACT_ADDRESS",
    "TOKEN_MINT_ADDRESS",
    "STAKING_PERIOD_DAYS",
    "MATCH_EPSILON",
    "MATCH_RELATIVE_TOLERANCE",
    "DIFF_TOLERANCE_PCT",
    "FETCH_BATCH_SIZE",
    "FETCH_BATCH_DELAY_SEC",
    "FETCH_MAX_RETRIES",
    "RPC_TIMEOUT_SEC",
    "LEDGER_WORKERS",
    "RUN_DEADLINE_SEC",
    "STAKEWATCH_DB_PATH",
    "IDENTITY_GROUPS_PATH",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Unset every Stakewatch variable so settings fall back to defaults."""
    for name in STAKE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite-backed Database in tmp_path."""
    from backend_stakewatch.database import get_database

    return get_database(tmp_path / "stakewatch.db")


def _ui_amount(value: float) -> dict[str, Any]:
    return {"amount": str(int(round(value * 1_000_000))), "decimals": 6, "uiAmount": value}


@pytest.fixture
def raw_tx():
    """
    Build a jsonParsed getTransaction result.

    rows: (account_index, owner, pre, post); pre/post None means the token
    account did not exist before / after the transaction.
    """

    def _make(
        signature: str,
        block_time: int | None,
        rows: list[tuple[int, str, float | None, float | None]],
        *,
        mint: str,
        err: Any = None,
    ) -> dict[str, Any]:
        size = max((r[0] for r in rows), default=-1) + 1
        pre, post = [], []
        for idx, owner, before, after in rows:
            if before is not None:
                pre.append({"accountIndex": idx, "mint": mint, "owner": owner, "uiTokenAmount": _ui_amount(before)})
            if after is not None:
                post.append({"accountIndex": idx, "mint": mint, "owner": owner, "uiTokenAmount": _ui_amount(after)})
        return {
            "slot": 250_000_000,
            "blockTime": block_time,
            "transaction": {
                "signatures": [signature],
                "message": {"accountKeys": [{"pubkey": f"TokenAccount{i}"} for i in range(size)]},
            },
            "meta": {"err": err, "preTokenBalances": pre, "postTokenBalances": post},
        }

    return _make

"""
Solana ingestion package.

Fetches staking-contract transactions over JSON-RPC (bounded concurrency,
resumable cursor) and projects them into per-account balance observations for
the tracked SPL mint.
"""

from backend_stakewatch.solana_listener.listener import (
    RpcTransactionSource,
    TransactionPage,
    TransactionSource,
)
from backend_stakewatch.solana_listener.models import (
    BalanceObservation,
    SignatureInfo,
    TransferDirection,
    TransferRecord,
    UnmatchedDelta,
)
from backend_stakewatch.solana_listener.parser import extract_observations

__all__ = [
    "BalanceObservation",
    "RpcTransactionSource",
    "SignatureInfo",
    "TransactionPage",
    "TransactionSource",
    "TransferDirection",
    "TransferRecord",
    "UnmatchedDelta",
    "extract_observations",
]

"""
Backend Stakewatch — stake ledger and holder-snapshot reconciliation for Solana SPL tokens.

Turns token balance changes observed in staking-contract transactions into
per-actor FIFO stake ledgers, and explains the difference between two holder
snapshots as typed transfer and lifecycle events. Library code; scheduling and
presentation live outside this package.
"""

__version__ = "0.1.0"

"""
Reconciliation runners: staking ledgers and holder snapshot events.
"""

from backend_stakewatch.agent_worker.runner import (
    ReconciliationConfig,
    ReconciliationReport,
    run_snapshot_diff,
    run_staking_reconciliation,
)

__all__ = [
    "ReconciliationConfig",
    "ReconciliationReport",
    "run_snapshot_diff",
    "run_staking_reconciliation",
]

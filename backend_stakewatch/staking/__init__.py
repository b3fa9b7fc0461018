from backend_stakewatch.staking.engine import (
    DEFAULT_STAKING_PERIOD_SEC,
    build_ledger,
    build_ledgers,
    group_transfers_by_actor,
    rank_ledgers,
    reconcile_contract_balance,
    summarize_ledgers,
    unlock_schedule,
)
from backend_stakewatch.staking.models import (
    ActorLedger,
    ContractReconciliation,
    ShortfallRecord,
    StakeLot,
    StakeSummary,
    UnlockBucket,
)

__all__ = [
    "DEFAULT_STAKING_PERIOD_SEC",
    "ActorLedger",
    "ContractReconciliation",
    "ShortfallRecord",
    "StakeLot",
    "StakeSummary",
    "UnlockBucket",
    "build_ledger",
    "build_ledgers",
    "group_transfers_by_actor",
    "rank_ledgers",
    "reconcile_contract_balance",
    "summarize_ledgers",
    "unlock_schedule",
]

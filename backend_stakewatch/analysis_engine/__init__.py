"""
Analysis engine — counterparty matching, tolerance primitives and identity groups.

Turns per-transaction balance observations into staking transfers and answers
"same holder?" questions for the snapshot differ.
"""

from backend_stakewatch.analysis_engine.identity_cluster import (
    IdentityDirectory,
    IdentityGroup,
    StaticIdentityDirectory,
    load_identity_directory,
)
from backend_stakewatch.analysis_engine.matcher import (
    MatcherConfig,
    MatchResult,
    collect_transfers,
    match_transfers,
)

__all__ = [
    "IdentityDirectory",
    "IdentityGroup",
    "MatchResult",
    "MatcherConfig",
    "StaticIdentityDirectory",
    "collect_transfers",
    "load_identity_directory",
    "match_transfers",
]

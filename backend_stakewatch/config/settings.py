"""
Application settings and environment configuration.

Responsibilities:
- Load configuration from environment variables and .env files (config.env).
- Validate addresses and numeric settings; provide defaults for optional ones.
- Expose one typed Settings object for the fetcher, matcher, ledger engine,
  snapshot differ and store.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from backend_stakewatch.config import env
from backend_stakewatch.core.exceptions import ConfigError
from backend_stakewatch.utils.wallet_utils import is_valid_wallet

SECONDS_PER_DAY = 86400

DEFAULT_STAKING_PERIOD_DAYS = 90
DEFAULT_MATCH_EPSILON = 1.0
DEFAULT_MATCH_RELATIVE_TOLERANCE = 0.0
DEFAULT_DIFF_TOLERANCE_PCT = 0.01
DEFAULT_FETCH_BATCH_SIZE = 5
DEFAULT_FETCH_BATCH_DELAY_SEC = 1.0
DEFAULT_FETCH_MAX_RETRIES = 5
DEFAULT_RPC_TIMEOUT_SEC = 30.0
DEFAULT_LEDGER_WORKERS = 4
DEFAULT_DB_PATH = "stakewatch.db"


@dataclass(frozen=True)
class Settings:
    """Resolved configuration; see get_settings() for the env variable of each field."""

    network: str
    rpc_url: str
    staking_contract_address: str | None
    token_mint_address: str | None
    staking_period_days: int = DEFAULT_STAKING_PERIOD_DAYS
    match_epsilon: float = DEFAULT_MATCH_EPSILON
    match_relative_tolerance: float = DEFAULT_MATCH_RELATIVE_TOLERANCE
    diff_tolerance_pct: float = DEFAULT_DIFF_TOLERANCE_PCT
    fetch_batch_size: int = DEFAULT_FETCH_BATCH_SIZE
    fetch_batch_delay_sec: float = DEFAULT_FETCH_BATCH_DELAY_SEC
    fetch_max_retries: int = DEFAULT_FETCH_MAX_RETRIES
    rpc_timeout_sec: float = DEFAULT_RPC_TIMEOUT_SEC
    ledger_workers: int = DEFAULT_LEDGER_WORKERS
    run_deadline_sec: float | None = None
    db_path: Path = Path(DEFAULT_DB_PATH)
    identity_groups_path: Path | None = None

    @property
    def staking_period_sec(self) -> int:
        return self.staking_period_days * SECONDS_PER_DAY

    def require_staking_target(self) -> tuple[str, str]:
        """Return (contract, mint); ConfigError if either is unset."""
        if not self.staking_contract_address or not self.token_mint_address:
            raise ConfigError(
                "STAKING_CONTRACT_ADDRESS and TOKEN_MINT_ADDRESS are required for staking runs"
            )
        return self.staking_contract_address, self.token_mint_address


def _validated_address(name: str) -> str | None:
    value = env.get_str(name)
    if value is not None and not is_valid_wallet(value):
        raise ConfigError(f"{name} is not a valid Solana address: {value!r}")
    return value


def _positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")


def get_settings() -> Settings:
    """
    Return the current application settings, read from the environment.

    Raises ConfigError for malformed numbers, non-positive sizes, or invalid
    addresses. Contract and mint may be unset (snapshot-only use); staking runs
    call Settings.require_staking_target().
    """
    staking_period_days = env.get_int("STAKING_PERIOD_DAYS", DEFAULT_STAKING_PERIOD_DAYS)
    fetch_batch_size = env.get_int("FETCH_BATCH_SIZE", DEFAULT_FETCH_BATCH_SIZE)
    ledger_workers = env.get_int("LEDGER_WORKERS", DEFAULT_LEDGER_WORKERS)
    match_epsilon = env.get_float("MATCH_EPSILON", DEFAULT_MATCH_EPSILON)
    diff_tolerance_pct = env.get_float("DIFF_TOLERANCE_PCT", DEFAULT_DIFF_TOLERANCE_PCT)
    for name, value in (
        ("STAKING_PERIOD_DAYS", staking_period_days),
        ("FETCH_BATCH_SIZE", fetch_batch_size),
        ("LEDGER_WORKERS", ledger_workers),
        ("MATCH_EPSILON", match_epsilon),
        ("DIFF_TOLERANCE_PCT", diff_tolerance_pct),
    ):
        _positive(name, value)

    deadline = env.get_float("RUN_DEADLINE_SEC", None)
    if deadline is not None:
        _positive("RUN_DEADLINE_SEC", deadline)
    groups_path = env.get_str("IDENTITY_GROUPS_PATH")

    return Settings(
        network=env.get_solana_network(),
        rpc_url=env.get_solana_rpc_url(),
        staking_contract_address=_validated_address("STAKING_CONTRACT_ADDRESS"),
        token_mint_address=_validated_address("TOKEN_MINT_ADDRESS"),
        staking_period_days=staking_period_days,
        match_epsilon=match_epsilon,
        match_relative_tolerance=env.get_float(
            "MATCH_RELATIVE_TOLERANCE", DEFAULT_MATCH_RELATIVE_TOLERANCE
        ),
        diff_tolerance_pct=diff_tolerance_pct,
        fetch_batch_size=fetch_batch_size,
        fetch_batch_delay_sec=env.get_float("FETCH_BATCH_DELAY_SEC", DEFAULT_FETCH_BATCH_DELAY_SEC),
        fetch_max_retries=env.get_int("FETCH_MAX_RETRIES", DEFAULT_FETCH_MAX_RETRIES),
        rpc_timeout_sec=env.get_float("RPC_TIMEOUT_SEC", DEFAULT_RPC_TIMEOUT_SEC),
        ledger_workers=ledger_workers,
        run_deadline_sec=deadline,
        db_path=Path(env.get_str("STAKEWATCH_DB_PATH", DEFAULT_DB_PATH)),
        identity_groups_path=Path(groups_path) if groups_path else None,
    )

"""Wallet and account address helpers."""

from solders.pubkey import Pubkey


def is_valid_wallet(w: str) -> bool:
    """Return True if w is a valid Solana address (Pubkey, base58)."""
    try:
        Pubkey.from_string(w.strip())
        return True
    except Exception:
        return False


def short_address(w: str | None, keep: int = 8) -> str:
    """Truncate an address for log output ("9QCfNuQu...")."""
    if not w:
        return "?"
    return w if len(w) <= keep else w[:keep] + "..."

"""
Tolerance matching and deterministic ordering shared by the matcher and the differ.

Two balance deltas are "the same transfer" when their magnitudes differ by less
than an absolute epsilon (staking matcher) or by at most a percentage of the
reference magnitude (snapshot differ). Candidates are ranked by closeness with
explicit tie-breaks so results never depend on dict iteration order.
"""

from __future__ import annotations

from typing import Callable, Iterable, Sequence, TypeVar

T = TypeVar("T")

# Balances below this are rounding noise (token UI amounts are floats).
DUST_THRESHOLD = 1e-6


def magnitude_gap(a: float, b: float) -> float:
    """Absolute difference between the magnitudes of two deltas."""
    return abs(abs(a) - abs(b))


def within_absolute(reference: float, candidate: float, epsilon: float) -> bool:
    """True when the magnitudes differ by strictly less than epsilon."""
    return magnitude_gap(reference, candidate) < epsilon


def within_relative(reference: float, candidate: float, pct: float) -> bool:
    """
    True when |candidate| is within pct of |reference| (inclusive).

    A decrease of 100 and an increase of 101 match at pct=0.01; 102 does not.
    """
    ref = abs(reference)
    # small slack for float representation of pct * ref
    return magnitude_gap(reference, candidate) <= pct * ref + 1e-12 * max(ref, 1.0)


def best_candidate(
    candidates: Iterable[T],
    rank: Callable[[T], Sequence[object]],
) -> T | None:
    """Return the candidate with the smallest rank tuple, or None; ties keep the first seen."""
    best: T | None = None
    best_key: Sequence[object] | None = None
    for c in candidates:
        key = rank(c)
        if best_key is None or tuple(key) < tuple(best_key):
            best, best_key = c, key
    return best

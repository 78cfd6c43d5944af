"""
Ecash Escrow SDK - Denominations

Mints sign one key per power-of-two amount, so every output amount must
be split into powers of two before blinding.

Examples:
    13 sats  -> [1, 4, 8]
    100 sats -> [4, 32, 64]

Selection picks locally known proofs for a spend, preferring an exact
match, then the smallest overshoot, then the fewest proofs.
"""

from typing import List, Optional, Sequence, Tuple

from .ecash_types import Proof

# ═══════════════════════════════════════════════════════════════════════════════
# STANDARD DENOMINATIONS (1 .. 2^31)
# ═══════════════════════════════════════════════════════════════════════════════

MAX_ORDER = 32
DENOMINATIONS: List[int] = [1 << i for i in range(MAX_ORDER)]

# Refuse splits that would produce absurd output lists
DEFAULT_MAX_OUTPUTS = 64


# ═══════════════════════════════════════════════════════════════════════════════
# BINARY SPLIT
# ═══════════════════════════════════════════════════════════════════════════════

def split_amount(amount: int) -> List[int]:
    """
    Split amount into power-of-two denominations, ascending.

    Args:
        amount: Integer sat amount (0 yields an empty list)

    Returns:
        List of powers of two that sum to amount

    Raises:
        TypeError: If amount is not an integer
        ValueError: If amount is negative or too large

    Examples:
        >>> split_amount(13)
        [1, 4, 8]

        >>> split_amount(64)
        [64]
    """
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise TypeError(f"Amount must be integer, got {type(amount)}")
    if amount < 0:
        raise ValueError(f"Amount must not be negative, got {amount}")
    if amount >= (1 << MAX_ORDER):
        raise ValueError(f"Amount too large: {amount}")

    parts = []
    for i in range(MAX_ORDER):
        if amount & (1 << i):
            parts.append(1 << i)
    return parts


def split_amount_grouped(amounts: Sequence[int]) -> List[Tuple[int, int]]:
    """
    Group a list of denominations into (denomination, count), descending.

    Examples:
        >>> split_amount_grouped([8, 8, 2, 1, 1])
        [(8, 2), (2, 1), (1, 2)]
    """
    counts = {}
    for a in amounts:
        counts[a] = counts.get(a, 0) + 1
    return sorted(counts.items(), key=lambda x: -x[0])


def count_outputs(amount: int) -> int:
    """Number of outputs an amount splits into."""
    return len(split_amount(amount))


def format_split(amount: int) -> str:
    """
    Human-readable split.

    Examples:
        >>> format_split(13)
        '1×8 + 1×4 + 1×1 sat (3 proofs)'
    """
    parts = split_amount(amount)
    grouped = split_amount_grouped(parts)
    text = " + ".join(f"{count}×{size}" for size, count in grouped)
    word = "proof" if len(parts) == 1 else "proofs"
    return f"{text} sat ({len(parts)} {word})"


# ═══════════════════════════════════════════════════════════════════════════════
# PROOF SELECTION
# ═══════════════════════════════════════════════════════════════════════════════

def sum_proofs(proofs: Sequence[Proof]) -> int:
    return sum(p.amount for p in proofs)


def select_proofs(proofs: Sequence[Proof], target: int) -> Optional[List[Proof]]:
    """
    Choose proofs whose sum is at least target.

    Strategy:
      1. A single proof that matches exactly
      2. Greedy descending fill without overshoot; if that lands exactly
         on target, done
      3. Otherwise top up with the smallest proof that covers the
         remainder, or take the smallest single proof covering target,
         whichever overshoots less (ties -> fewer proofs)

    Returns:
        Selected proofs, or None when the total is insufficient
    """
    if target <= 0:
        raise ValueError(f"Target must be positive, got {target}")
    if sum_proofs(proofs) < target:
        return None

    for p in proofs:
        if p.amount == target:
            return [p]

    ordered = sorted(proofs, key=lambda p: p.amount, reverse=True)
    chosen: List[Proof] = []
    rest: List[Proof] = []
    acc = 0
    for p in ordered:
        if acc + p.amount <= target:
            chosen.append(p)
            acc += p.amount
        else:
            rest.append(p)
    if acc == target:
        return chosen

    remaining = target - acc
    candidates = []
    top_up = [p for p in rest if p.amount >= remaining]
    if top_up:
        best = min(top_up, key=lambda p: p.amount)
        candidates.append(chosen + [best])
    singles = [p for p in ordered if p.amount >= target]
    if singles:
        candidates.append([min(singles, key=lambda p: p.amount)])
    if not candidates:
        return None
    return min(candidates, key=lambda c: (sum_proofs(c) - target, len(c)))


# ═══════════════════════════════════════════════════════════════════════════════
# VALIDATION
# ═══════════════════════════════════════════════════════════════════════════════

def validate_amount(amount: int, max_outputs: int = DEFAULT_MAX_OUTPUTS) -> Tuple[bool, str]:
    """
    Validate a user-supplied sat amount.

    Returns:
        (is_valid, message) tuple
    """
    if not isinstance(amount, int) or isinstance(amount, bool):
        return False, f"Amount must be integer, got {type(amount).__name__}"
    if amount <= 0:
        return False, "Amount must be positive"
    if amount >= (1 << MAX_ORDER):
        return False, "Amount too large"
    n = count_outputs(amount)
    if n > max_outputs:
        return False, f"Requires {n} outputs (max {max_outputs})"
    return True, f"OK: {format_split(amount)}"

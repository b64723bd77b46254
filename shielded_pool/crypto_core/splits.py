# crypto_core/splits.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Optional, TypeVar

from shielded_pool.config import LAMPORTS_PER_SOL
from shielded_pool.errors import InvalidInput

T = TypeVar("T")

LAMPORT = Decimal("0.000000001")


def to_lamports(amount) -> int:
    """SOL amount (Decimal/str/int) -> integer lamports. At most 9 decimals, never negative."""
    if isinstance(amount, (bool, float)):
        raise InvalidInput("amount must be a Decimal, str or int, not float")
    try:
        d = Decimal(str(amount))
    except InvalidOperation:
        raise InvalidInput(f"not a number: {amount!r}")
    if not d.is_finite():
        raise InvalidInput("amount must be finite")
    if d < 0:
        raise InvalidInput("amount must not be negative")
    try:
        exact = d == d.quantize(LAMPORT)
    except InvalidOperation:
        raise InvalidInput(f"amount {amount!r} is too large")
    if not exact:
        raise InvalidInput("amount has more than 9 decimal places")
    return int(d * LAMPORTS_PER_SOL)


def from_lamports(lamports: int) -> Decimal:
    return (Decimal(lamports) / LAMPORTS_PER_SOL).quantize(LAMPORT)


def first_covering(
    notes: Iterable[T],
    target: int,
    amount_of: Callable[[T], Optional[int]],
) -> Optional[T]:
    """
    Deterministic single-note selection: the first note in iteration
    (insertion) order whose amount covers target. Notes whose amount is
    unknown (amount_of returns None) are skipped.
    """
    for n in notes:
        amt = amount_of(n)
        if amt is not None and amt >= target:
            return n
    return None

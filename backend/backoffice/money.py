from __future__ import annotations


def percent_of_cents(amount_cents: int, percent: int) -> int:
    """
    percent% of an amount in cents, nearest-cent rounding (half-up).

    Integer arithmetic only; amounts are never negative here.
    """
    if not amount_cents or not percent:
        return 0
    return (amount_cents * percent + 50) // 100

# ABOUTME: Whole-unit money arithmetic for obligations and payments
# ABOUTME: Rounding at input and payment sums that count each payment id once

import math
from collections.abc import Iterable
from decimal import ROUND_FLOOR, Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ledgersync.types import Payment


def round_amount(value: Any) -> int:
    """
    Round a monetary input to the nearest whole currency unit.

    Halves round up (2.5 -> 3, -2.5 -> -2). Anything that is not a finite
    number, including None and unparseable strings, becomes 0.

    Args:
        value: Raw amount from a caller or a store row

    Returns:
        Integer amount in whole units
    """
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal):
        if not value.is_finite():
            return 0
        return int((value + Decimal("0.5")).to_integral_value(rounding=ROUND_FLOOR))
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return math.floor(number + 0.5)


def sum_unique_by_payment_id(payments: Iterable["Payment"]) -> int:
    """
    Sum payment amounts, counting each payment id at most once.

    The first occurrence of an id wins; payments without an id are skipped.
    Overlapping feeds (initial fetch, push refetch, local echo) can deliver
    the same payment more than once.
    """
    seen: set[str] = set()
    total = 0
    for payment in payments:
        if not payment.id or payment.id in seen:
            continue
        seen.add(payment.id)
        total += round_amount(payment.amount)
    return total

"""Amount validation and points calculation.

Both helpers are pure.  Amounts are handled as ``Decimal`` so that a
receipt total such as ``450.00`` divided by ``100`` is exactly ``4.5``
rather than a binary float approximation.
"""

from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Optional, Union

from loyalty.core.config import settings
from loyalty.core.errors import InvalidAmount

Number = Union[int, float, Decimal, str]


def to_decimal(value: Optional[Number]) -> Optional[Decimal]:
    """Convert ``value`` to ``Decimal``; ``None`` for missing or non-finite input."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        amount = Decimal(str(value).replace(",", "").strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def validate_amount(total_amount: Optional[Number], receipt_id: Optional[str] = None) -> Decimal:
    """Return the total as ``Decimal`` or raise ``InvalidAmount``.

    Missing, zero, negative and unparseable totals are rejected.
    """
    amount = to_decimal(total_amount)
    if amount is None or amount <= 0:
        raise InvalidAmount(receipt_id=receipt_id)
    return amount


def compute_points(total_amount: Number, points_per_currency: Optional[int] = None) -> int:
    """``floor(total_amount / points_per_currency)``.

    A missing or non-positive divisor falls back to
    ``DEFAULT_POINTS_PER_CURRENCY``.  Zero points is a valid result.
    """
    amount = to_decimal(total_amount)
    if amount is None:
        raise ValueError(f"total_amount is not a number: {total_amount!r}")
    divisor = points_per_currency if points_per_currency and points_per_currency > 0 else settings.DEFAULT_POINTS_PER_CURRENCY
    points = (amount / Decimal(divisor)).to_integral_value(rounding=ROUND_FLOOR)
    return max(0, int(points))

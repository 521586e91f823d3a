"""
Fixed-point money helpers.

Inside the engine every amount is a ``Decimal`` in major units (``Decimal("9.99")``).
Gateway payloads carry integer minor units (paise, cents); they are converted
here, at the adapter boundary, and nowhere else.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional

from billsync.core.config import settings


def currency_exponent(currency: str) -> int:
    """Number of decimal places the currency is stored with."""
    return 0 if (currency or "").upper() in settings.zero_decimal_currencies else 2


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # str() first so 0.1 does not become 0.1000000000000000055511151231257827
        value = str(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValueError(f"Not a monetary amount: {value!r}") from e


def quantize(amount: Any, currency: str) -> Decimal:
    exponent = currency_exponent(currency)
    step = Decimal(1).scaleb(-exponent)
    return to_decimal(amount).quantize(step, rounding=ROUND_HALF_UP)


def from_minor_units(amount: Optional[int], currency: str) -> Optional[Decimal]:
    if amount is None:
        return None
    exponent = currency_exponent(currency)
    return quantize(Decimal(int(amount)).scaleb(-exponent), currency)


def to_minor_units(amount: Any, currency: str) -> int:
    exponent = currency_exponent(currency)
    return int(quantize(amount, currency).scaleb(exponent))


def within_tolerance(amount: Decimal, reference: Decimal, tolerance: Decimal) -> bool:
    """True when ``amount`` is strictly closer to ``reference`` than ``tolerance`` (a fraction)."""
    if reference <= 0:
        return False
    return abs(amount - reference) < reference * tolerance

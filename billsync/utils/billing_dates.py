from datetime import datetime, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta

from billsync.models.plan import BillingCycle


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cycle_delta(cycle: BillingCycle) -> relativedelta:
    if cycle == BillingCycle.YEARLY:
        return relativedelta(years=1)
    return relativedelta(months=1)


def add_billing_cycle(start: datetime, cycle: BillingCycle, cycles: int = 1) -> datetime:
    """
    Calendar arithmetic, not a day count: 2024-01-31 + 1 month is 2024-02-29,
    2023-01-31 + 1 month is 2023-02-28.
    """
    return start + cycle_delta(cycle) * cycles


def from_timestamp(value) -> Optional[datetime]:
    """Gateway payloads carry unix seconds."""
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def to_timestamp(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())

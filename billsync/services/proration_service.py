import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from billsync.core.errors import InvalidSubscriptionStateError
from billsync.models.subscription import Subscription
from billsync.models.user import User
from billsync.repositories.plan_repository import PlanRepository
from billsync.repositories.subscription_repository import SubscriptionRepository
from billsync.repositories.transaction_repository import TransactionRepository
from billsync.services.pricing_service import PricingService, currency_for_region, region_for_country
from billsync.utils.billing_dates import utcnow
from billsync.utils.money import quantize

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")


@dataclass(frozen=True)
class ProrationQuote:
    current_plan_id: Optional[int]
    new_plan_id: int
    is_upgrade: bool
    is_fresh_activation: bool
    currency: str
    current_price: Decimal
    new_price: Decimal
    remaining_fraction: Decimal
    remaining_value: Decimal
    amount_due: Decimal
    credit: Decimal
    effective_date: datetime

    def as_dict(self) -> dict:
        return {
            "current_plan_id": self.current_plan_id,
            "new_plan_id": self.new_plan_id,
            "is_upgrade": self.is_upgrade,
            "is_fresh_activation": self.is_fresh_activation,
            "currency": self.currency,
            "current_price": str(self.current_price),
            "new_price": str(self.new_price),
            "remaining_fraction": str(self.remaining_fraction),
            "remaining_value": str(self.remaining_value),
            "amount_due": str(self.amount_due),
            "credit": str(self.credit),
            "effective_date": self.effective_date.isoformat(),
        }


def remaining_fraction(start: datetime, end: datetime, now: datetime) -> Decimal:
    total = (end - start).total_seconds()
    if total <= 0:
        return ZERO
    fraction = Decimal(str((end - now).total_seconds())) / Decimal(str(total))
    return min(max(fraction, ZERO), ONE)


def calculate_proration(
    *,
    current_plan_id: Optional[int],
    new_plan_id: int,
    current_price: Decimal,
    new_price: Decimal,
    last_paid: Optional[Decimal],
    start: Optional[datetime],
    end: Optional[datetime],
    now: datetime,
    currency: str,
) -> ProrationQuote:
    """Price a plan change against what is left of the paid cycle.

    With nothing paid yet this is a fresh activation and the full new price is due.
    Upgrades take effect now; downgrades at the end of the current cycle, with
    the unused value carried forward as credit.
    """
    new_price = quantize(new_price, currency)
    current_price = quantize(current_price, currency)

    if last_paid is None or start is None or end is None:
        return ProrationQuote(
            current_plan_id=current_plan_id,
            new_plan_id=new_plan_id,
            is_upgrade=True,
            is_fresh_activation=True,
            currency=currency,
            current_price=current_price,
            new_price=new_price,
            remaining_fraction=ZERO,
            remaining_value=quantize(ZERO, currency),
            amount_due=new_price,
            credit=quantize(ZERO, currency),
            effective_date=now,
        )

    fraction = remaining_fraction(start, end, now)
    remaining_value = quantize(Decimal(last_paid) * fraction, currency)

    if new_price > current_price:
        amount_due = max(new_price - remaining_value, ZERO)
        return ProrationQuote(
            current_plan_id=current_plan_id,
            new_plan_id=new_plan_id,
            is_upgrade=True,
            is_fresh_activation=False,
            currency=currency,
            current_price=current_price,
            new_price=new_price,
            remaining_fraction=fraction,
            remaining_value=remaining_value,
            amount_due=quantize(amount_due, currency),
            credit=quantize(ZERO, currency),
            effective_date=now,
        )

    credit = max(remaining_value - new_price, ZERO)
    return ProrationQuote(
        current_plan_id=current_plan_id,
        new_plan_id=new_plan_id,
        is_upgrade=False,
        is_fresh_activation=False,
        currency=currency,
        current_price=current_price,
        new_price=new_price,
        remaining_fraction=fraction,
        remaining_value=remaining_value,
        amount_due=quantize(ZERO, currency),
        credit=quantize(credit, currency),
        effective_date=end,
    )


class ProrationService:
    def __init__(self, db):
        self.db = db
        self.pricing = PricingService(PlanRepository(db))
        self.subscriptions = SubscriptionRepository(db)
        self.transactions = TransactionRepository(db)

    def quote(self, user: User, new_plan_id: int, now: Optional[datetime] = None,
              current: Optional[Subscription] = None) -> ProrationQuote:
        now = now or utcnow()
        region = region_for_country(user.billing_country)
        currency = currency_for_region(region)
        new_plan = self.pricing.get_plan(new_plan_id)
        new_price = self.pricing.price_amount(new_plan.id, region)

        current = current or self.subscriptions.get_live_by_user(user.id)
        if current is None:
            return calculate_proration(
                current_plan_id=None,
                new_plan_id=new_plan.id,
                current_price=ZERO,
                new_price=new_price,
                last_paid=None,
                start=None,
                end=None,
                now=now,
                currency=currency,
            )
        if current.plan_id == new_plan.id:
            raise InvalidSubscriptionStateError(f"Already subscribed to plan {new_plan.id}")

        current_price = self.pricing.price_amount(current.plan_id, region)
        last_txn = self.transactions.latest_completed(current.id)
        quote = calculate_proration(
            current_plan_id=current.plan_id,
            new_plan_id=new_plan.id,
            current_price=current_price,
            new_price=new_price,
            last_paid=Decimal(last_txn.amount) if last_txn is not None else None,
            start=current.start_date,
            end=current.end_date,
            now=now,
            currency=currency,
        )
        logger.info(
            "Proration quoted",
            extra={"user_id": user.id, "subscription_id": current.id, **quote.as_dict()},
        )
        return quote

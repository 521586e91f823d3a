"""
Time-driven subscription transitions.

Each sweep selects candidate ids, then handles every subscription in its own
transaction: lock the row, re-check the predicate against the locked state,
transition. Webhooks touching the same row serialize on the lock, and a sweep
that overlaps a previous run finds nothing left to do.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from billsync.core.config import settings
from billsync.db.session import transaction
from billsync.models.subscription import GATEWAY_NONE, Subscription, SubscriptionStatus
from billsync.models.transaction import Transaction, TransactionStatus
from billsync.repositories.plan_repository import PlanRepository
from billsync.repositories.subscription_repository import SubscriptionRepository
from billsync.repositories.transaction_repository import TransactionRepository
from billsync.schemas.transaction import PlanSnapshot, RenewalAnnotation, TransactionMetadata
from billsync.services import subscription_state as sm
from billsync.services.event_handlers import apply_and_collect, subscription_payload, supersede_live
from billsync.services.notification_service import Notification, Notifier, dispatch_notifications
from billsync.services.pricing_service import PricingService, currency_for_region, region_for_country
from billsync.utils.billing_dates import add_billing_cycle, utcnow
from billsync.utils.money import quantize

logger = logging.getLogger(__name__)


def zero_cost_transaction(subscription: Subscription, gateway_transaction_id: str,
                          metadata: TransactionMetadata) -> Transaction:
    currency = currency_for_region(region_for_country(subscription.user.billing_country))
    return Transaction(
        user_id=subscription.user_id,
        subscription_id=subscription.id,
        amount=quantize(Decimal("0"), currency),
        currency=currency,
        gateway=GATEWAY_NONE,
        gateway_transaction_id=gateway_transaction_id,
        status=TransactionStatus.COMPLETED,
        meta=metadata.to_json(),
    )


class LifecycleService:
    def __init__(self, db, notifier: Notifier):
        self.db = db
        self.notifier = notifier
        self.subscriptions = SubscriptionRepository(db)
        self.transactions = TransactionRepository(db)
        self.pricing = PricingService(PlanRepository(db))

    def run_cycle(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        # Plan changes first so a row due to switch plans is not pushed into grace
        counts = {
            "plan_changes": self._sweep(self.subscriptions.ids_with_due_plan_change(now), self._apply_plan_change, now),
            "renewals": self._sweep(
                self.subscriptions.ids_due_for_renewal(now + timedelta(hours=settings.RENEWAL_LOOKAHEAD_HOURS)),
                self._renew,
                now,
            ),
            "grace_entries": self._sweep(
                self.subscriptions.ids_past_end(now, settings.GRACE_PERIOD_DAYS), self._enter_grace, now
            ),
            "expirations": self._sweep(self.subscriptions.ids_grace_expired(now), self._expire, now),
        }
        logger.info("Subscription lifecycle cycle done", extra=counts)
        return counts

    def _sweep(self, ids: List[int], step: Callable, now: datetime) -> int:
        changed = 0
        for subscription_id in ids:
            notifications: List[Notification] = []
            try:
                with transaction(self.db):
                    subscription = self.subscriptions.get_for_update(subscription_id)
                    if subscription is None:
                        continue
                    if step(subscription, now, notifications):
                        changed += 1
            except Exception:
                logger.exception(
                    f"Lifecycle step {step.__name__} failed for subscription {subscription_id}",
                    extra={"subscription_id": subscription_id},
                )
                continue
            dispatch_notifications(self.notifier, notifications)
        return changed

    def _renew(self, subscription: Subscription, now: datetime, notifications: List[Notification]) -> bool:
        horizon = now + timedelta(hours=settings.RENEWAL_LOOKAHEAD_HOURS)
        if (
            subscription.status != SubscriptionStatus.ACTIVE
            or not subscription.auto_renew
            or subscription.gateway != GATEWAY_NONE
            or subscription.pending_change_to_plan_id is not None
            or subscription.end_date > horizon
        ):
            return False
        cycle = subscription.plan.billing_cycle
        old_end = subscription.end_date
        txn_id = f"renewal_{subscription.id}_{old_end:%Y%m%d}"
        if self.transactions.exists(GATEWAY_NONE, txn_id):
            return False

        transition = sm.plan_renewal(subscription, cycle)
        if not apply_and_collect(self.db, subscription, transition, now, notifications):
            return False
        metadata = TransactionMetadata(
            plan=PlanSnapshot(
                id=subscription.plan.id,
                name=subscription.plan.name,
                billing_cycle=cycle.value,
                price=Decimal("0"),
            ),
            annotations=[RenewalAnnotation(
                cycle_start=subscription.start_date,
                cycle_end=subscription.end_date,
                billing_cycle=cycle.value,
                source="scheduler",
            )],
        )
        self.transactions.create(zero_cost_transaction(subscription, txn_id, metadata))
        return True

    def _enter_grace(self, subscription: Subscription, now: datetime, notifications: List[Notification]) -> bool:
        transition = sm.plan_expiry_to_grace(subscription, now, settings.GRACE_PERIOD_DAYS)
        return apply_and_collect(self.db, subscription, transition, now, notifications)

    def _expire(self, subscription: Subscription, now: datetime, notifications: List[Notification]) -> bool:
        return apply_and_collect(self.db, subscription, sm.plan_grace_expiry(subscription, now), now, notifications)

    def _apply_plan_change(self, subscription: Subscription, now: datetime, notifications: List[Notification]) -> bool:
        """Scheduled downgrade to a zero-cost plan; paid targets activate through the gateway."""
        if (
            not subscription.is_live
            or subscription.pending_change_to_plan_id is None
            or subscription.pending_change_effective_date is None
            or subscription.pending_change_effective_date > now
        ):
            return False
        target = subscription.pending_change_to_plan
        region = region_for_country(subscription.user.billing_country)
        if target is None or not self.pricing.is_zero_cost(target, region):
            return False

        start = subscription.pending_change_effective_date
        end = add_billing_cycle(start, target.billing_cycle)
        if end <= now:
            start, end = now, add_billing_cycle(now, target.billing_cycle)
        successor = self.subscriptions.create(Subscription(
            user_id=subscription.user_id,
            plan_id=target.id,
            status=SubscriptionStatus.CREATED,
            start_date=start,
            end_date=end,
            auto_renew=True,
            gateway=GATEWAY_NONE,
            previous_plan_id=subscription.plan_id,
        ))
        supersede_live(self.db, successor, now)
        sm.apply_transition(successor, sm.plan_activation(successor))
        self.db.flush()

        metadata = TransactionMetadata(
            plan=PlanSnapshot(id=target.id, name=target.name, billing_cycle=target.billing_cycle.value,
                              price=Decimal("0")),
            extra={"previous_plan_id": subscription.plan_id, "source": "scheduled_change"},
        )
        self.transactions.create(zero_cost_transaction(successor, f"free_{successor.id}", metadata))
        notifications.append(Notification(
            successor.user_id,
            "plan_changed",
            {**subscription_payload(successor, "scheduled_change"), "previous_plan_id": subscription.plan_id},
        ))
        logger.info(
            f"Scheduled change applied: subscription {subscription.id} -> {successor.id} (plan {target.id})",
            extra={"user_id": successor.user_id},
        )
        return True


def run_lifecycle(db, notifier: Notifier, now: Optional[datetime] = None) -> Dict[str, int]:
    return LifecycleService(db, notifier).run_cycle(now)

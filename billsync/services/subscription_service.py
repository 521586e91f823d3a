"""
User-initiated subscription actions.

Anything that needs the gateway calls it first, outside the database
transaction; the local ledger is then updated in one transaction that holds
the subscription row lock. A gateway failure therefore leaves local state
untouched.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from billsync.core.errors import (
    InvalidSubscriptionStateError,
    SignatureVerificationError,
    SubscriptionNotFoundError,
)
from billsync.db.session import transaction
from billsync.models.plan import Plan
from billsync.models.subscription import GATEWAY_NONE, Subscription, SubscriptionStatus
from billsync.models.transaction import Transaction, TransactionStatus
from billsync.models.user import User
from billsync.repositories.plan_repository import PlanRepository
from billsync.repositories.subscription_repository import SubscriptionRepository
from billsync.repositories.transaction_repository import TransactionRepository
from billsync.schemas.transaction import PlanSnapshot, TransactionMetadata
from billsync.services import subscription_state as sm
from billsync.services.event_handlers import subscription_payload, supersede_live
from billsync.services.lifecycle_service import zero_cost_transaction
from billsync.services.notification_service import Notification, Notifier, dispatch_notifications
from billsync.services.payment_gateway import GatewaySubscription, PaymentGateway, require_gateway
from billsync.services.pricing_service import PricingService, region_for_country
from billsync.services.proration_service import ProrationQuote, ProrationService
from billsync.utils.billing_dates import add_billing_cycle, utcnow

logger = logging.getLogger(__name__)


class SubscriptionService:
    def __init__(self, db, gateway: Optional[PaymentGateway] = None, notifier: Optional[Notifier] = None,
                 gateway_provider: Callable[[], PaymentGateway] = require_gateway):
        self.db = db
        self.gateway = gateway
        self.gateway_provider = gateway_provider
        self.notifier = notifier
        self.repo = SubscriptionRepository(db)
        self.transactions = TransactionRepository(db)
        self.pricing = PricingService(PlanRepository(db))
        self.proration = ProrationService(db)

    def _require_gateway(self) -> PaymentGateway:
        if self.gateway is None:
            self.gateway = self.gateway_provider()
        return self.gateway

    def _notify(self, notifications: List[Notification]) -> None:
        if self.notifier is not None:
            dispatch_notifications(self.notifier, notifications)

    def _snapshot(self, plan: Plan, region: str) -> PlanSnapshot:
        price = self.pricing.get_price(plan.id, region)
        return PlanSnapshot(
            id=plan.id,
            name=plan.name,
            billing_cycle=plan.billing_cycle.value,
            price=Decimal(price.amount),
            currency=price.currency,
        )

    # Queries

    def get_status(self, user: User) -> Optional[Subscription]:
        """The live subscription, else the most recent one."""
        return self.repo.get_live_by_user(user.id) or self.repo.get_latest_by_user(user.id)

    def quote(self, user: User, plan_id: int, now: Optional[datetime] = None) -> ProrationQuote:
        return self.proration.quote(user, plan_id, now=now)

    # Zero-cost activation

    def activate_free(self, user: User, plan_id: int, now: Optional[datetime] = None) -> Subscription:
        now = now or utcnow()
        plan = self.pricing.get_plan(plan_id)
        region = region_for_country(user.billing_country)
        if not plan.is_active:
            raise InvalidSubscriptionStateError(f"Plan {plan.id} is not available")
        if not self.pricing.is_zero_cost(plan, region):
            raise InvalidSubscriptionStateError(f"Plan {plan.id} is a paid plan; use checkout")

        notifications: List[Notification] = []
        with transaction(self.db):
            live = self.repo.get_live_by_user(user.id, for_update=True)
            if live is not None and live.gateway != GATEWAY_NONE:
                raise InvalidSubscriptionStateError("A paid subscription is active; cancel or downgrade it instead")
            if live is not None and live.plan_id == plan.id:
                return live

            subscription = self.repo.create(Subscription(
                user_id=user.id,
                plan_id=plan.id,
                status=SubscriptionStatus.CREATED,
                start_date=now,
                end_date=add_billing_cycle(now, plan.billing_cycle),
                auto_renew=True,
                gateway=GATEWAY_NONE,
            ))
            supersede_live(self.db, subscription, now)
            sm.apply_transition(subscription, sm.plan_activation(subscription))
            self.db.flush()
            metadata = TransactionMetadata(plan=PlanSnapshot(
                id=plan.id, name=plan.name, billing_cycle=plan.billing_cycle.value, price=Decimal("0"),
            ))
            self.transactions.create(zero_cost_transaction(subscription, f"free_{subscription.id}", metadata))
            notifications.append(Notification(user.id, "activated", subscription_payload(subscription, "free")))

        logger.info(f"Free plan {plan.id} activated for user {user.id}", extra={"subscription_id": subscription.id})
        self._notify(notifications)
        return subscription

    # Paid creation and upgrades

    def checkout(self, user: User, plan_id: int, now: Optional[datetime] = None):
        """Create the gateway subscription the user will authorize; nothing is stored locally yet."""
        plan = self.pricing.get_plan(plan_id)
        region = region_for_country(user.billing_country)
        if not plan.is_active:
            raise InvalidSubscriptionStateError(f"Plan {plan.id} is not available")
        if self.pricing.is_zero_cost(plan, region):
            raise InvalidSubscriptionStateError(f"Plan {plan.id} is free; activate it directly")

        quote = self.proration.quote(user, plan.id, now=now)
        live = self.repo.get_live_by_user(user.id)
        if live is not None and live.is_paid and not quote.is_upgrade:
            raise InvalidSubscriptionStateError("Moving to a cheaper plan is scheduled through downgrade")

        gateway_subscription = self._require_gateway().create_subscription(plan.id, user.id, {
            "notes": {
                "is_upgrade": str(live is not None and live.is_paid).lower(),
                "amount_due": str(quote.amount_due),
            },
        })
        return gateway_subscription, quote

    def _checkout_plan(self, gateway: PaymentGateway, user: User, plan_id: int,
                       gateway_subscription_id: str) -> Plan:
        """The plan the gateway subscription was created for; the client's plan_id must agree."""
        remote = gateway.get_subscription(gateway_subscription_id)
        notes = remote.get("notes") if isinstance(remote.get("notes"), dict) else {}
        if str(notes.get("internal_user_id")) != str(user.id):
            logger.warning(f"Gateway subscription {gateway_subscription_id} was not created for user {user.id}")
            raise InvalidSubscriptionStateError("Gateway subscription was not created for this account")
        if str(notes.get("internal_plan_id")) != str(plan_id):
            logger.warning(
                f"Confirm for plan {plan_id} but gateway subscription {gateway_subscription_id} "
                f"is for plan {notes.get('internal_plan_id')}"
            )
            raise InvalidSubscriptionStateError("Plan does not match the checkout")
        plan = self.pricing.get_plan(plan_id)
        if not plan.is_active:
            raise InvalidSubscriptionStateError(f"Plan {plan.id} is not available")
        return plan

    def confirm(self, user: User, plan_id: int, payment_id: str, gateway_subscription_id: str,
                signature: str, now: Optional[datetime] = None) -> Subscription:
        """Mirror a paid subscription locally once its checkout signature checks out."""
        now = now or utcnow()
        gateway = self._require_gateway()
        if not gateway.verify_payment(payment_id, signature, gateway_subscription_id):
            logger.warning(f"Payment signature mismatch for user {user.id}, payment {payment_id}")
            raise SignatureVerificationError("Payment signature verification failed")

        existing = self.repo.get_by_gateway_ref(gateway.name, gateway_subscription_id)
        if existing is not None:
            if existing.user_id != user.id:
                raise InvalidSubscriptionStateError("Gateway subscription belongs to another account")
            return existing

        plan = self._checkout_plan(gateway, user, plan_id, gateway_subscription_id)
        region = region_for_country(user.billing_country)
        quote = self.proration.quote(user, plan.id, now=now)

        # Gateway first: the old paid subscription stops billing before we record the new one
        live = self.repo.get_live_by_user(user.id)
        if live is not None and live.is_paid and live.gateway_subscription_id != gateway_subscription_id:
            gateway.cancel_subscription(live.gateway_subscription_id, at_cycle_end=False)

        notifications: List[Notification] = []
        with transaction(self.db):
            subscription = self.repo.create(Subscription(
                user_id=user.id,
                plan_id=plan.id,
                status=SubscriptionStatus.CREATED,
                start_date=now,
                end_date=add_billing_cycle(now, plan.billing_cycle),
                auto_renew=True,
                gateway=gateway.name,
                gateway_subscription_id=gateway_subscription_id,
            ))
            previous = supersede_live(self.db, subscription, now)
            sm.apply_transition(subscription, sm.plan_activation(subscription))
            self.db.flush()

            if not self.transactions.exists(gateway.name, payment_id):
                metadata = TransactionMetadata(
                    plan=self._snapshot(plan, region),
                    extra={"proration": quote.as_dict(), "source": "checkout"},
                )
                self.transactions.create(Transaction(
                    user_id=user.id,
                    subscription_id=subscription.id,
                    amount=quote.amount_due,
                    currency=quote.currency,
                    gateway=gateway.name,
                    gateway_transaction_id=payment_id,
                    status=TransactionStatus.COMPLETED,
                    meta=metadata.to_json(),
                ))
            kind = "plan_changed" if previous is not None else "activated"
            notifications.append(Notification(user.id, kind, subscription_payload(subscription, "checkout")))

        logger.info(
            f"Paid subscription {subscription.id} confirmed for user {user.id}",
            extra={"plan_id": plan.id, "gateway_subscription_id": gateway_subscription_id},
        )
        self._notify(notifications)
        return subscription

    # Scheduled downgrade

    def schedule_downgrade(self, user: User, plan_id: int, now: Optional[datetime] = None):
        now = now or utcnow()
        target = self.pricing.get_plan(plan_id)
        region = region_for_country(user.billing_country)
        live = self.repo.get_live_by_user(user.id)
        if live is None:
            raise SubscriptionNotFoundError("No active subscription to downgrade")
        if live.pending_change_to_plan_id is not None:
            raise InvalidSubscriptionStateError("A plan change is already scheduled")
        if not live.is_paid:
            raise InvalidSubscriptionStateError("Only paid subscriptions can be downgraded")

        quote = self.proration.quote(user, target.id, now=now, current=live)
        if quote.is_upgrade:
            raise InvalidSubscriptionStateError("Target plan is not cheaper; use checkout to upgrade")

        effective = live.end_date
        gateway = self._require_gateway()
        gateway.cancel_subscription(live.gateway_subscription_id, at_cycle_end=True)
        successor_ref: Optional[GatewaySubscription] = None
        if not self.pricing.is_zero_cost(target, region):
            successor_ref = gateway.create_subscription(target.id, user.id, {
                "start_at": effective,
                "notes": {"scheduled_from_plan_id": str(live.plan_id)},
            })

        with transaction(self.db):
            current = self.repo.get_for_update(live.id)
            if not current.is_live or current.pending_change_to_plan_id is not None:
                raise InvalidSubscriptionStateError("Subscription changed while scheduling the downgrade")
            current.pending_change_to_plan_id = target.id
            current.pending_change_effective_date = effective
            current.auto_renew = False
            if successor_ref is not None:
                self.repo.create(Subscription(
                    user_id=user.id,
                    plan_id=target.id,
                    status=SubscriptionStatus.CREATED,
                    start_date=effective,
                    end_date=add_billing_cycle(effective, target.billing_cycle),
                    auto_renew=True,
                    gateway=gateway.name,
                    gateway_subscription_id=successor_ref.external_subscription_id,
                    previous_plan_id=current.plan_id,
                    credit_amount=quote.credit if quote.credit > 0 else None,
                    credit_currency=quote.currency if quote.credit > 0 else None,
                ))

        logger.info(
            f"Downgrade to plan {target.id} scheduled for user {user.id} at {effective.isoformat()}",
            extra={"subscription_id": live.id, "credit": str(quote.credit)},
        )
        return current, quote, successor_ref

    # Cancellation

    def cancel(self, user: User, now: Optional[datetime] = None) -> Subscription:
        """Stop renewal; access continues until the end of the paid cycle."""
        live = self.repo.get_live_by_user(user.id)
        if live is None:
            raise SubscriptionNotFoundError("No active subscription to cancel")
        if not live.auto_renew and live.pending_change_to_plan_id is None:
            return live

        successors = self.repo.list_pending_successors(user.id)
        if live.is_paid or any(s.is_paid for s in successors):
            gateway = self._require_gateway()
            if live.is_paid:
                gateway.cancel_subscription(live.gateway_subscription_id, at_cycle_end=True)
            for successor in successors:
                if successor.is_paid:
                    gateway.cancel_subscription(successor.gateway_subscription_id, at_cycle_end=False)

        with transaction(self.db):
            current = self.repo.get_for_update(live.id)
            current.auto_renew = False
            current.pending_change_to_plan_id = None
            current.pending_change_effective_date = None
            # Scheduled successors are dropped with the cancellation
            for successor in successors:
                sm.apply_transition(successor, sm.plan_cancellation(successor, now or utcnow()))

        logger.info(f"Subscription {current.id} set to end at {current.end_date.isoformat()} for user {user.id}")
        return current

"""
Gateway event -> state machine transition -> ledger write.

Handlers run inside the webhook transaction opened by ``WebhookService``;
they lock the subscription row they touch, never commit, and return the
notifications to send once the transaction has committed.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from billsync.core.config import settings
from billsync.models.subscription import LIVE_STATUSES, Subscription, SubscriptionStatus
from billsync.models.transaction import Transaction, TransactionStatus
from billsync.repositories.plan_repository import PlanRepository
from billsync.repositories.subscription_repository import SubscriptionRepository
from billsync.repositories.transaction_repository import TransactionRepository
from billsync.schemas.transaction import DowngradeCredit, RenewalAnnotation, TransactionMetadata
from billsync.schemas.webhook import GatewayEvent, PaymentInfo, WebhookEventType
from billsync.services import subscription_state as sm
from billsync.services.notification_service import Notification
from billsync.services.payment_gateway import PaymentGateway
from billsync.services.reconciliation_service import ReconciliationService
from billsync.utils.billing_dates import from_timestamp, utcnow

logger = logging.getLogger(__name__)


def subscription_payload(subscription: Subscription, reason: str = "") -> Dict:
    return {
        "subscription_id": subscription.id,
        "plan_id": subscription.plan_id,
        "status": subscription.status.value,
        "end_date": subscription.end_date.isoformat() if subscription.end_date else None,
        "grace_period_end": subscription.grace_period_end.isoformat() if subscription.grace_period_end else None,
        "reason": reason,
    }


def supersede_live(db, subscription: Subscription, now: datetime) -> Optional[Subscription]:
    """Retire the user's other live row before ``subscription`` goes live."""
    db.flush()
    repo = SubscriptionRepository(db)
    previous = repo.get_live_by_user(subscription.user_id, for_update=True)
    if previous is None or previous.id == subscription.id:
        return None
    sm.apply_transition(previous, sm.plan_supersede(previous, now))
    if subscription.previous_plan_id is None:
        subscription.previous_plan_id = previous.plan_id
    # The old row must leave the live set before the new one enters it
    db.flush()
    logger.info(
        f"Subscription {previous.id} superseded by {subscription.id}",
        extra={"user_id": subscription.user_id, "status": previous.status.value},
    )
    return previous


def apply_and_collect(db, subscription: Subscription, transition: sm.Transition, now: datetime,
                      notifications: List[Notification]) -> bool:
    """Apply a transition, retiring any other live row first when this one goes live."""
    if transition.is_noop:
        return False
    going_live = (
        transition.to_status in LIVE_STATUSES
        and subscription.status not in LIVE_STATUSES
    )
    superseded = supersede_live(db, subscription, now) if going_live else None
    sm.apply_transition(subscription, transition)
    db.flush()
    if transition.notification:
        notifications.append(Notification(
            subscription.user_id,
            transition.notification,
            subscription_payload(subscription, transition.reason),
        ))
    if superseded is not None:
        notifications.append(Notification(
            subscription.user_id,
            "plan_changed",
            {**subscription_payload(subscription, "plan_changed"), "previous_plan_id": superseded.plan_id},
        ))
    logger.info(
        f"Subscription {subscription.id} {transition.reason}",
        extra={"subscription_id": subscription.id, "status": subscription.status.value},
    )
    return True


class EventHandlers:
    def __init__(self, db, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway
        self.subscriptions = SubscriptionRepository(db)
        self.transactions = TransactionRepository(db)
        self.reconciler = ReconciliationService(PlanRepository(db))

    def handle(self, event: GatewayEvent, now: Optional[datetime] = None) -> List[Notification]:
        handler: Callable = getattr(self, DISPATCH[event.event_type])
        notifications: List[Notification] = []
        handler(event, now or utcnow(), notifications)
        return notifications

    # Helpers

    def _locate(self, event: GatewayEvent) -> Optional[Subscription]:
        ref = event.gateway_subscription_id
        subscription = self.subscriptions.get_by_gateway_ref(event.gateway, ref)
        if subscription is None:
            logger.warning(
                f"No local subscription for {event.event_type.value} ({ref}); acknowledging without effect",
                extra={"external_event_id": event.external_event_id},
            )
            return None
        return self.subscriptions.get_for_update(subscription.id)

    def _learn_customer(self, subscription: Subscription, customer_id: Optional[str]):
        user = subscription.user
        if customer_id and user is not None and not user.gateway_customer_id:
            user.gateway_customer_id = customer_id
            logger.info(f"Learned gateway customer {customer_id} for user {user.id}")

    def _record(self, subscription: Subscription, gateway: str, payment: PaymentInfo,
                status: TransactionStatus, authentication: bool = False,
                annotations: Optional[list] = None) -> Optional[Transaction]:
        existing = self.transactions.get_by_gateway_id(gateway, payment.id)
        if existing is not None:
            if annotations:
                # payment.captured got here first; keep what the charge event adds
                metadata = TransactionMetadata.from_json(existing.meta)
                metadata.annotations.extend(a for a in annotations if metadata.annotation(a.kind) is None)
                existing.meta = metadata.to_json()
            logger.info(f"Transaction {payment.id} already recorded; skipping")
            return None
        reconciled = self.reconciler.reconcile(
            subscription.user,
            subscription.plan,
            payment.amount,
            payment.currency,
            authentication=authentication,
        )
        metadata = reconciled.metadata
        metadata.annotations.extend(annotations or [])
        metadata.extra.update({
            "payment_method": payment.method,
            "invoice_id": payment.invoice_id,
            "order_id": payment.order_id,
        })
        if payment.error_description:
            metadata.extra["error_description"] = payment.error_description
        txn = Transaction(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            amount=reconciled.amount,
            currency=reconciled.currency,
            gateway=gateway,
            gateway_transaction_id=payment.id,
            status=status,
            meta=metadata.to_json(),
        )
        self.transactions.create(txn)
        return txn

    def _current_end(self, event: GatewayEvent) -> Optional[datetime]:
        if event.subscription is not None and event.subscription.current_end is not None:
            return event.subscription.current_end
        remote = self.gateway.get_subscription(event.gateway_subscription_id)
        return from_timestamp(remote.get("current_end"))

    def _cycle_applied(self, subscription: Subscription, event: GatewayEvent) -> bool:
        """Whether the billing cycle this charge pays for is already on the row."""
        if subscription.status == SubscriptionStatus.CREATED:
            return False
        current_start = event.subscription.current_start
        if current_start is not None:
            return current_start <= subscription.start_date
        txn = self.transactions.get_by_gateway_id(event.gateway, event.payment.id)
        return txn is not None and TransactionMetadata.from_json(txn.meta).annotation("renewal") is not None

    def _activate_if_started(self, subscription: Subscription, now: datetime, notifications):
        # A scheduled successor authenticates early but only goes live at its start date
        if subscription.start_date is not None and subscription.start_date > now:
            return
        apply_and_collect(self.db, subscription, sm.plan_activation(subscription), now, notifications)

    # Payment events

    def on_payment_succeeded(self, event: GatewayEvent, now: datetime, notifications: List[Notification]):
        subscription = self._locate(event)
        if subscription is None:
            return
        self._learn_customer(subscription, event.payment.customer_id)
        authentication = event.event_type == WebhookEventType.PAYMENT_AUTHORIZED
        self._record(subscription, event.gateway, event.payment, TransactionStatus.COMPLETED,
                     authentication=authentication)
        if subscription.status == SubscriptionStatus.CREATED:
            self._activate_if_started(subscription, now, notifications)

    def on_payment_failed(self, event: GatewayEvent, now: datetime, notifications: List[Notification]):
        subscription = self._locate(event)
        if subscription is None:
            return
        txn = self._record(subscription, event.gateway, event.payment, TransactionStatus.FAILED)
        if txn is not None:
            notifications.append(Notification(
                subscription.user_id,
                "payment_failed",
                {**subscription_payload(subscription, "payment_failed"), "payment_id": event.payment.id},
            ))
        transition = sm.plan_payment_failure(subscription, now, settings.GRACE_PERIOD_DAYS)
        apply_and_collect(self.db, subscription, transition, now, notifications)

    # Subscription events

    def on_subscription_authenticated(self, event: GatewayEvent, now: datetime, notifications: List[Notification]):
        subscription = self._locate(event)
        if subscription is None:
            return
        self._learn_customer(subscription, event.subscription.customer_id)
        self._activate_if_started(subscription, now, notifications)

    def on_subscription_activated(self, event: GatewayEvent, now: datetime, notifications: List[Notification]):
        subscription = self._locate(event)
        if subscription is None:
            return
        self._learn_customer(subscription, event.subscription.customer_id)
        apply_and_collect(self.db, subscription, sm.plan_activation(subscription), now, notifications)
        refresh = sm.plan_period_refresh(subscription, event.subscription.current_end)
        apply_and_collect(self.db, subscription, refresh, now, notifications)

    def on_subscription_charged(self, event: GatewayEvent, now: datetime, notifications: List[Notification]):
        subscription = self._locate(event)
        if subscription is None:
            return
        self._learn_customer(subscription, event.payment.customer_id or event.subscription.customer_id)

        annotations = []
        if self._cycle_applied(subscription, event):
            logger.info(f"Charge {event.payment.id} already applied to subscription {subscription.id}")
            transition = sm.NOOP
        else:
            transition = sm.plan_charge(
                subscription, subscription.plan.billing_cycle, now, event.subscription.current_start
            )
        if not transition.is_noop:
            annotations.append(RenewalAnnotation(
                cycle_start=transition.changes["start_date"],
                cycle_end=transition.changes["end_date"],
                billing_cycle=subscription.plan.billing_cycle.value,
                source="gateway",
            ))
        if subscription.credit_amount:
            annotations.append(DowngradeCredit(
                credit_amount=subscription.credit_amount,
                currency=subscription.credit_currency or event.payment.currency,
                from_plan_id=subscription.previous_plan_id,
                to_plan_id=subscription.plan_id,
            ))
            subscription.credit_amount = None
            subscription.credit_currency = None

        self._record(subscription, event.gateway, event.payment, TransactionStatus.COMPLETED,
                     annotations=annotations)
        apply_and_collect(self.db, subscription, transition, now, notifications)

    def on_subscription_pending(self, event: GatewayEvent, now: datetime, notifications: List[Notification]):
        subscription = self._locate(event)
        if subscription is None:
            return
        transition = sm.plan_grace(subscription, now, settings.GRACE_PERIOD_DAYS, "payment_pending")
        apply_and_collect(self.db, subscription, transition, now, notifications)

    def on_subscription_halted(self, event: GatewayEvent, now: datetime, notifications: List[Notification]):
        subscription = self._locate(event)
        if subscription is None:
            return
        transition = sm.plan_grace(subscription, now, settings.HALTED_GRACE_PERIOD_DAYS, "halted")
        apply_and_collect(self.db, subscription, transition, now, notifications)

    def on_subscription_cancelled(self, event: GatewayEvent, now: datetime, notifications: List[Notification]):
        subscription = self._locate(event)
        if subscription is None:
            return
        apply_and_collect(self.db, subscription, sm.plan_cancellation(subscription, now), now, notifications)

    def on_subscription_completed(self, event: GatewayEvent, now: datetime, notifications: List[Notification]):
        subscription = self._locate(event)
        if subscription is None:
            return
        apply_and_collect(self.db, subscription, sm.plan_completion(subscription), now, notifications)

    def on_subscription_updated(self, event: GatewayEvent, now: datetime, notifications: List[Notification]):
        subscription = self._locate(event)
        if subscription is None:
            return
        transition = sm.plan_period_refresh(subscription, self._current_end(event))
        apply_and_collect(self.db, subscription, transition, now, notifications)

    def on_subscription_paused(self, event: GatewayEvent, now: datetime, notifications: List[Notification]):
        subscription = self._locate(event)
        if subscription is None:
            return
        apply_and_collect(self.db, subscription, sm.plan_pause(subscription), now, notifications)

    def on_subscription_resumed(self, event: GatewayEvent, now: datetime, notifications: List[Notification]):
        subscription = self._locate(event)
        if subscription is None:
            return
        transition = sm.plan_resume(subscription, self._current_end(event))
        apply_and_collect(self.db, subscription, transition, now, notifications)


DISPATCH: Dict[WebhookEventType, str] = {
    WebhookEventType.PAYMENT_AUTHORIZED: "on_payment_succeeded",
    WebhookEventType.PAYMENT_CAPTURED: "on_payment_succeeded",
    WebhookEventType.PAYMENT_FAILED: "on_payment_failed",
    WebhookEventType.SUBSCRIPTION_AUTHENTICATED: "on_subscription_authenticated",
    WebhookEventType.SUBSCRIPTION_ACTIVATED: "on_subscription_activated",
    WebhookEventType.SUBSCRIPTION_CHARGED: "on_subscription_charged",
    WebhookEventType.SUBSCRIPTION_COMPLETED: "on_subscription_completed",
    WebhookEventType.SUBSCRIPTION_UPDATED: "on_subscription_updated",
    WebhookEventType.SUBSCRIPTION_PENDING: "on_subscription_pending",
    WebhookEventType.SUBSCRIPTION_HALTED: "on_subscription_halted",
    WebhookEventType.SUBSCRIPTION_CANCELLED: "on_subscription_cancelled",
    WebhookEventType.SUBSCRIPTION_PAUSED: "on_subscription_paused",
    WebhookEventType.SUBSCRIPTION_RESUMED: "on_subscription_resumed",
}

_missing = set(WebhookEventType) - set(DISPATCH)
if _missing:
    raise RuntimeError(f"Unhandled webhook event types: {sorted(e.value for e in _missing)}")
_unknown = [name for name in DISPATCH.values() if not callable(getattr(EventHandlers, name, None))]
if _unknown:
    raise RuntimeError(f"Dispatch table names missing handlers: {_unknown}")

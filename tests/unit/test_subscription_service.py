"""
User-initiated actions: free activation, checkout, confirm, downgrade, cancel.
Run: pytest tests/unit/test_subscription_service.py -v
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from billsync.core.errors import (
    GatewayUnavailableError,
    InvalidSubscriptionStateError,
    SignatureVerificationError,
    SubscriptionNotFoundError,
)
from billsync.models.subscription import GATEWAY_NONE, Subscription, SubscriptionStatus
from billsync.models.transaction import Transaction
from billsync.services.subscription_service import SubscriptionService

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = datetime(2024, 1, 31, tzinfo=timezone.utc)
MIDPOINT = datetime(2024, 1, 16, tzinfo=timezone.utc)


def _live(db, user_id):
    return db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD]),
    ).all()


def test_activate_free_plan(db, plans, user, notifier):
    subscription = SubscriptionService(db, notifier=notifier).activate_free(user, plans["free"].id)

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.gateway == GATEWAY_NONE
    txn = db.query(Transaction).filter(Transaction.subscription_id == subscription.id).one()
    assert txn.gateway_transaction_id == f"free_{subscription.id}"
    assert txn.amount == Decimal("0.00")
    notifier.notify.assert_called_once()
    user_id, kind, payload = notifier.notify.call_args[0]
    assert (user_id, kind) == (user.id, "activated")
    assert payload["subscription_id"] == subscription.id


def test_activate_free_is_idempotent(db, plans, user, notifier):
    service = SubscriptionService(db, notifier=notifier)
    first = service.activate_free(user, plans["free"].id)
    second = service.activate_free(user, plans["free"].id)
    assert first.id == second.id
    assert db.query(Subscription).count() == 1


def test_activate_free_rejects_paid_plan(db, plans, user):
    with pytest.raises(InvalidSubscriptionStateError):
        SubscriptionService(db).activate_free(user, plans["pro"].id)


def test_activate_free_refused_while_paid_plan_is_live(db, plans, user, make_subscription):
    make_subscription(user, plans["pro"], gateway="razorpay", gateway_subscription_id="sub_pro")
    with pytest.raises(InvalidSubscriptionStateError):
        SubscriptionService(db).activate_free(user, plans["free"].id)


def test_database_refuses_two_live_rows(db, plans, user, make_subscription):
    make_subscription(user, plans["free"])
    with pytest.raises(IntegrityError):
        make_subscription(user, plans["pro"], gateway="razorpay", gateway_subscription_id="sub_x")
    db.rollback()


def test_checkout_creates_gateway_subscription(db, plans, user, gateway):
    gateway_subscription, quote = SubscriptionService(db, gateway=gateway).checkout(user, plans["pro"].id)
    assert gateway_subscription.external_subscription_id == "sub_test_1"
    assert quote.is_fresh_activation
    assert quote.amount_due == Decimal("20.00")
    assert gateway.created[0]["plan_id"] == plans["pro"].id
    # Nothing is stored until the payment is confirmed
    assert db.query(Subscription).count() == 0


def test_checkout_refuses_free_plan(db, plans, user, gateway):
    with pytest.raises(InvalidSubscriptionStateError):
        SubscriptionService(db, gateway=gateway).checkout(user, plans["free"].id)


def test_checkout_to_cheaper_plan_must_use_downgrade(db, plans, user, gateway, make_subscription):
    make_subscription(user, plans["pro"], gateway="razorpay", gateway_subscription_id="sub_pro",
                      paid=(Decimal("20.00"), "USD"))
    with pytest.raises(InvalidSubscriptionStateError):
        SubscriptionService(db, gateway=gateway).checkout(user, plans["basic"].id)
    assert gateway.created == []


def test_checkout_without_gateway_is_retryable(db, plans, user):
    def unavailable():
        raise GatewayUnavailableError("Payment gateway unavailable: no credentials")

    with pytest.raises(GatewayUnavailableError) as exc:
        SubscriptionService(db, gateway_provider=unavailable).checkout(user, plans["pro"].id)
    assert exc.value.retryable
    assert exc.value.status_code == 503


def test_confirm_rejects_bad_signature(db, plans, user, gateway):
    with pytest.raises(SignatureVerificationError):
        SubscriptionService(db, gateway=gateway).confirm(
            user, plans["pro"].id, payment_id="pay_1", gateway_subscription_id="sub_test_1", signature="forged"
        )
    assert db.query(Subscription).count() == 0


def test_confirm_upgrade_replaces_live_subscription(db, plans, user, gateway, notifier, make_subscription):
    old = make_subscription(
        user, plans["basic"], start=START, end=END,
        gateway="razorpay", gateway_subscription_id="sub_basic", paid=(Decimal("10.00"), "USD"),
    )

    SubscriptionService(db, gateway=gateway).checkout(user, plans["pro"].id, now=MIDPOINT)

    subscription = SubscriptionService(db, gateway=gateway, notifier=notifier).confirm(
        user, plans["pro"].id, payment_id="pay_up", gateway_subscription_id="sub_test_1",
        signature="valid", now=MIDPOINT,
    )

    assert gateway.cancelled == [("sub_basic", False)]
    db.expire_all()
    assert db.get(Subscription, old.id).status == SubscriptionStatus.CANCELLED
    live = _live(db, user.id)
    assert [s.id for s in live] == [subscription.id]
    assert live[0].previous_plan_id == plans["basic"].id
    assert live[0].end_date == datetime(2024, 2, 16, tzinfo=timezone.utc)
    txn = db.query(Transaction).filter(Transaction.gateway_transaction_id == "pay_up").one()
    assert txn.amount == Decimal("15.00")
    assert notifier.notify.call_args[0][1] == "plan_changed"


def test_confirm_twice_returns_same_subscription(db, plans, user, gateway):
    service = SubscriptionService(db, gateway=gateway)
    service.checkout(user, plans["pro"].id)
    first = service.confirm(user, plans["pro"].id, "pay_1", "sub_test_1", "valid")
    second = service.confirm(user, plans["pro"].id, "pay_1", "sub_test_1", "valid")
    assert first.id == second.id
    assert db.query(Transaction).count() == 1


def test_confirm_rejects_plan_other_than_checkout(db, plans, user, gateway):
    service = SubscriptionService(db, gateway=gateway)
    service.checkout(user, plans["basic"].id)
    with pytest.raises(InvalidSubscriptionStateError):
        service.confirm(user, plans["pro"].id, "pay_x", "sub_test_1", "valid")
    assert db.query(Subscription).count() == 0
    assert db.query(Transaction).count() == 0


def test_confirm_rejects_checkout_of_another_user(db, plans, user, india_user, gateway):
    SubscriptionService(db, gateway=gateway).checkout(india_user, plans["pro"].id)
    with pytest.raises(InvalidSubscriptionStateError):
        SubscriptionService(db, gateway=gateway).confirm(user, plans["pro"].id, "pay_x", "sub_test_1", "valid")


def test_confirm_rejects_plan_withdrawn_after_checkout(db, plans, user, gateway):
    service = SubscriptionService(db, gateway=gateway)
    service.checkout(user, plans["pro"].id)
    plans["pro"].is_active = False
    db.commit()
    with pytest.raises(InvalidSubscriptionStateError):
        service.confirm(user, plans["pro"].id, "pay_x", "sub_test_1", "valid")


def test_schedule_downgrade_to_paid_plan(db, plans, user, gateway, make_subscription):
    current = make_subscription(
        user, plans["pro"], start=START, end=END,
        gateway="razorpay", gateway_subscription_id="sub_pro", paid=(Decimal("20.00"), "USD"),
    )
    quarter = START + timedelta(days=7, hours=12)

    subscription, quote, successor_ref = SubscriptionService(db, gateway=gateway).schedule_downgrade(
        user, plans["basic"].id, now=quarter
    )

    assert subscription.pending_change_to_plan_id == plans["basic"].id
    assert subscription.pending_change_effective_date == END
    assert subscription.auto_renew is False
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert quote.credit == Decimal("5.00")
    assert gateway.cancelled == [("sub_pro", True)]
    assert gateway.created[0]["metadata"]["start_at"] == END

    successor = db.query(Subscription).filter(Subscription.status == SubscriptionStatus.CREATED).one()
    assert successor.gateway_subscription_id == successor_ref.external_subscription_id
    assert successor.start_date == END
    assert successor.credit_amount == Decimal("5.00")
    assert successor.previous_plan_id == current.plan_id


def test_schedule_downgrade_to_free_plan_creates_no_gateway_subscription(db, plans, user, gateway,
                                                                           make_subscription):
    make_subscription(
        user, plans["pro"], start=START, end=END,
        gateway="razorpay", gateway_subscription_id="sub_pro", paid=(Decimal("20.00"), "USD"),
    )
    _, _, successor_ref = SubscriptionService(db, gateway=gateway).schedule_downgrade(
        user, plans["free"].id, now=MIDPOINT
    )
    assert successor_ref is None
    assert gateway.created == []
    assert db.query(Subscription).count() == 1


def test_downgrade_twice_is_refused(db, plans, user, gateway, make_subscription):
    make_subscription(
        user, plans["pro"], start=START, end=END,
        gateway="razorpay", gateway_subscription_id="sub_pro", paid=(Decimal("20.00"), "USD"),
    )
    service = SubscriptionService(db, gateway=gateway)
    service.schedule_downgrade(user, plans["free"].id, now=MIDPOINT)
    with pytest.raises(InvalidSubscriptionStateError):
        service.schedule_downgrade(user, plans["basic"].id, now=MIDPOINT)


def test_cancel_keeps_access_until_period_end(db, plans, user, gateway, make_subscription):
    current = make_subscription(user, plans["pro"], gateway="razorpay", gateway_subscription_id="sub_pro")

    subscription = SubscriptionService(db, gateway=gateway).cancel(user)

    assert subscription.id == current.id
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.auto_renew is False
    assert gateway.cancelled == [("sub_pro", True)]


def test_cancel_drops_scheduled_successor(db, plans, user, gateway, make_subscription):
    make_subscription(
        user, plans["pro"], start=START, end=END,
        gateway="razorpay", gateway_subscription_id="sub_pro", paid=(Decimal("20.00"), "USD"),
    )
    service = SubscriptionService(db, gateway=gateway)
    service.schedule_downgrade(user, plans["basic"].id, now=MIDPOINT)

    subscription = service.cancel(user)

    assert subscription.pending_change_to_plan_id is None
    assert ("sub_test_1", False) in gateway.cancelled
    db.expire_all()
    assert db.query(Subscription).filter(Subscription.status == SubscriptionStatus.CREATED).count() == 0


def test_cancel_free_plan_needs_no_gateway(db, plans, user, make_subscription):
    make_subscription(user, plans["free"])

    def no_gateway():
        raise AssertionError("gateway should not be needed")

    subscription = SubscriptionService(db, gateway_provider=no_gateway).cancel(user)
    assert subscription.auto_renew is False


def test_cancel_without_subscription(db, plans, user):
    with pytest.raises(SubscriptionNotFoundError):
        SubscriptionService(db).cancel(user)

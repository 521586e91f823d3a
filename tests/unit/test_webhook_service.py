"""
Webhook ingestion: idempotency, signature checks, dispatch to the state machine.
Run: pytest tests/unit/test_webhook_service.py -v
"""
import json
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from billsync.core.config import settings
from billsync.core.errors import MalformedWebhookError, SignatureVerificationError, WebhookProcessingError
from billsync.models.subscription import Subscription, SubscriptionStatus
from billsync.models.transaction import Transaction, TransactionStatus
from billsync.models.webhook_event import WebhookEvent
from billsync.schemas.transaction import TransactionMetadata
from billsync.services.event_handlers import EventHandlers
from billsync.services.webhook_service import WebhookService
from billsync.utils.billing_dates import to_timestamp, utcnow

from tests.support import WEBHOOK_SECRET, sign


@pytest.fixture
def service(db, gateway, notifier):
    return WebhookService(db, gateway, notifier)


@pytest.fixture
def paid_subscription(plans, user, make_subscription):
    now = utcnow().replace(microsecond=0)
    return make_subscription(
        user, plans["pro"],
        start=now - timedelta(days=29),
        end=now + timedelta(days=1),
        gateway="razorpay",
        gateway_subscription_id="sub_pro",
    )


def _body(event):
    return json.dumps(event).encode("utf-8")


def _charged(razorpay_event, subscription, payment_id="pay_renew_1", amount=2000, currency="USD", event_id=None):
    return razorpay_event(
        "subscription.charged",
        subscription={
            "id": subscription.gateway_subscription_id,
            "status": "active",
            "current_start": to_timestamp(subscription.end_date),
            "current_end": to_timestamp(subscription.end_date + timedelta(days=30)),
        },
        payment={"id": payment_id, "amount": amount, "currency": currency, "status": "captured", "method": "card"},
        event_id=event_id,
    )


def test_charged_extends_cycle_and_records_transaction(db, service, paid_subscription, razorpay_event, notifier):
    old_end = paid_subscription.end_date
    result = service.ingest(_body(_charged(razorpay_event, paid_subscription)))

    assert result.processed
    assert not result.duplicate
    db.expire_all()
    subscription = db.get(Subscription, paid_subscription.id)
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.start_date == old_end
    assert subscription.end_date > old_end
    txn = db.query(Transaction).filter(Transaction.gateway_transaction_id == "pay_renew_1").one()
    assert txn.amount == Decimal("20.00")
    assert txn.currency == "USD"
    assert txn.status == TransactionStatus.COMPLETED
    assert TransactionMetadata.from_json(txn.meta).annotation("renewal") is not None
    notifier.notify.assert_called_once()
    assert notifier.notify.call_args[0][1] == "renewal"


def test_duplicate_delivery_has_no_second_effect(db, service, paid_subscription, razorpay_event, notifier):
    event = _charged(razorpay_event, paid_subscription, event_id="evt_1")
    service.ingest(_body(event))
    db.expire_all()
    end_after_first = db.get(Subscription, paid_subscription.id).end_date

    result = service.ingest(_body(event))

    assert result.processed
    assert result.duplicate
    db.expire_all()
    assert db.get(Subscription, paid_subscription.id).end_date == end_after_first
    assert db.query(Transaction).filter(Transaction.subscription_id == paid_subscription.id).count() == 1
    assert db.query(WebhookEvent).count() == 1
    assert notifier.notify.call_count == 1


def test_header_event_id_wins_over_payload(db, service, paid_subscription, razorpay_event):
    event = _charged(razorpay_event, paid_subscription, event_id="evt_body")
    service.ingest(_body(event), event_id="evt_header")
    record = db.query(WebhookEvent).one()
    assert record.external_event_id == "evt_header"


def test_failed_processing_is_retried_on_redelivery(db, service, paid_subscription, razorpay_event):
    event = _charged(razorpay_event, paid_subscription, event_id="evt_retry")

    with patch.object(EventHandlers, "on_subscription_charged", side_effect=RuntimeError("db hiccup")):
        with pytest.raises(WebhookProcessingError):
            service.ingest(_body(event))

    db.expire_all()
    record = db.query(WebhookEvent).one()
    assert record.processed is False
    assert record.attempts == 1
    assert "db hiccup" in record.last_error
    assert db.query(Transaction).count() == 0

    result = service.ingest(_body(event))

    assert result.processed
    assert not result.duplicate
    db.expire_all()
    record = db.query(WebhookEvent).one()
    assert record.processed is True
    assert record.last_error is None
    assert db.query(Transaction).count() == 1


def test_unknown_event_type_is_acknowledged_and_not_stored(db, service):
    result = service.ingest(_body({"event": "refund.processed", "payload": {}}))
    assert result.ignored
    assert not result.processed
    assert db.query(WebhookEvent).count() == 0


def test_invalid_json_is_malformed(service):
    with pytest.raises(MalformedWebhookError):
        service.ingest(b"{not json")


def test_missing_required_entity_is_malformed(service, razorpay_event):
    event = razorpay_event("subscription.charged", subscription={"id": "sub_x"})
    with pytest.raises(MalformedWebhookError):
        service.ingest(_body(event))


def test_tampered_body_fails_signature_check(db, service, paid_subscription, razorpay_event):
    body = _body(_charged(razorpay_event, paid_subscription))
    signature = sign(body)
    tampered = body.replace(b'"amount": 2000', b'"amount": 1')

    with patch.object(settings, "RAZORPAY_WEBHOOK_SECRET", WEBHOOK_SECRET):
        with pytest.raises(SignatureVerificationError) as exc:
            service.ingest(tampered, signature=signature)
        assert exc.value.status_code == 401

        result = service.ingest(body, signature=signature)
    assert result.processed
    assert db.query(WebhookEvent).count() == 1


def test_event_for_unknown_subscription_is_acknowledged(db, service, plans, razorpay_event):
    event = razorpay_event("subscription.cancelled", subscription={"id": "sub_nobody", "status": "cancelled"})
    result = service.ingest(_body(event))
    assert result.processed
    assert db.query(WebhookEvent).one().processed is True


def test_cancelled_event_ends_subscription(db, service, paid_subscription, razorpay_event, notifier):
    event = razorpay_event("subscription.cancelled", subscription={"id": "sub_pro", "status": "cancelled"})
    service.ingest(_body(event))
    db.expire_all()
    subscription = db.get(Subscription, paid_subscription.id)
    assert subscription.status == SubscriptionStatus.CANCELLED
    assert subscription.cancelled_at is not None
    assert notifier.notify.call_args[0][1] == "cancelled"


def test_halted_event_enters_long_grace(db, service, paid_subscription, razorpay_event):
    event = razorpay_event("subscription.halted", subscription={"id": "sub_pro", "status": "halted"})
    before = utcnow()
    service.ingest(_body(event))
    db.expire_all()
    subscription = db.get(Subscription, paid_subscription.id)
    assert subscription.status == SubscriptionStatus.GRACE_PERIOD
    assert subscription.grace_period_end >= before + timedelta(days=settings.HALTED_GRACE_PERIOD_DAYS - 1)


def test_payment_failed_records_failed_transaction(db, service, paid_subscription, razorpay_event, notifier):
    event = razorpay_event(
        "payment.failed",
        payment={
            "id": "pay_fail_1", "amount": 2000, "currency": "USD", "status": "failed",
            "subscription_id": "sub_pro", "error_description": "Card declined",
        },
    )
    service.ingest(_body(event))
    db.expire_all()
    txn = db.query(Transaction).filter(Transaction.gateway_transaction_id == "pay_fail_1").one()
    assert txn.status == TransactionStatus.FAILED
    assert TransactionMetadata.from_json(txn.meta).extra["error_description"] == "Card declined"
    # Still inside the paid cycle, so access is kept
    assert db.get(Subscription, paid_subscription.id).status == SubscriptionStatus.ACTIVE
    assert notifier.notify.call_args[0][1] == "payment_failed"


def test_inr_charge_for_global_user_recorded_in_usd(db, service, paid_subscription, razorpay_event):
    event = _charged(razorpay_event, paid_subscription, payment_id="pay_inr", amount=99900, currency="INR")
    service.ingest(_body(event))
    txn = db.query(Transaction).filter(Transaction.gateway_transaction_id == "pay_inr").one()
    assert txn.currency == "USD"
    assert txn.amount == Decimal("20.00")
    mismatch = TransactionMetadata.from_json(txn.meta).annotation("currency_mismatch")
    assert mismatch.reported_amount == Decimal("999.00")


def test_authorized_payment_activates_created_subscription(db, service, plans, user, make_subscription,
                                                           razorpay_event):
    created = make_subscription(
        user, plans["pro"], status=SubscriptionStatus.CREATED,
        gateway="razorpay", gateway_subscription_id="sub_new",
    )
    event = razorpay_event(
        "payment.authorized",
        payment={"id": "pay_auth", "amount": 99900, "currency": "INR", "notes": {"subscription_id": "sub_new"}},
    )
    service.ingest(_body(event))
    db.expire_all()
    assert db.get(Subscription, created.id).status == SubscriptionStatus.ACTIVE
    txn = db.query(Transaction).filter(Transaction.gateway_transaction_id == "pay_auth").one()
    assert txn.amount == Decimal("0.50")
    assert txn.currency == "USD"
    assert TransactionMetadata.from_json(txn.meta).annotation("auth_charge_normalized") is not None


def test_activation_supersedes_previous_live_subscription(db, service, plans, user, make_subscription,
                                                          razorpay_event):
    old = make_subscription(user, plans["free"])
    new = make_subscription(
        user, plans["pro"], status=SubscriptionStatus.CREATED,
        gateway="razorpay", gateway_subscription_id="sub_up",
    )
    event = razorpay_event("subscription.activated", subscription={"id": "sub_up", "status": "active"})
    service.ingest(_body(event))
    db.expire_all()
    assert db.get(Subscription, new.id).status == SubscriptionStatus.ACTIVE
    assert db.get(Subscription, old.id).status == SubscriptionStatus.CANCELLED
    live = db.query(Subscription).filter(
        Subscription.user_id == user.id,
        Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD]),
    ).count()
    assert live == 1


def test_first_charge_carries_downgrade_credit(db, service, plans, user, make_subscription, razorpay_event):
    successor = make_subscription(
        user, plans["basic"], status=SubscriptionStatus.CREATED,
        start=utcnow().replace(microsecond=0) - timedelta(minutes=1),
        gateway="razorpay", gateway_subscription_id="sub_down",
        credit_amount=Decimal("5.00"), credit_currency="USD",
    )
    event = razorpay_event(
        "subscription.charged",
        subscription={"id": "sub_down", "status": "active", "current_start": to_timestamp(successor.start_date)},
        payment={"id": "pay_down_1", "amount": 1000, "currency": "USD"},
    )
    service.ingest(_body(event))
    db.expire_all()
    subscription = db.get(Subscription, successor.id)
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.credit_amount is None
    txn = db.query(Transaction).filter(Transaction.gateway_transaction_id == "pay_down_1").one()
    credit = TransactionMetadata.from_json(txn.meta).annotation("downgrade_credit")
    assert credit.credit_amount == Decimal("5.00")


def test_charge_after_captured_payment_still_renews(db, service, paid_subscription, razorpay_event, notifier):
    old_end = paid_subscription.end_date
    captured = razorpay_event(
        "payment.captured",
        payment={"id": "pay_r1", "amount": 2000, "currency": "USD", "status": "captured",
                 "subscription_id": "sub_pro"},
        event_id="evt_captured",
    )
    service.ingest(_body(captured))
    service.ingest(_body(_charged(razorpay_event, paid_subscription, payment_id="pay_r1", event_id="evt_charged")))

    db.expire_all()
    subscription = db.get(Subscription, paid_subscription.id)
    assert subscription.start_date == old_end
    renewed_end = subscription.end_date
    assert renewed_end > old_end
    txn = db.query(Transaction).filter(Transaction.subscription_id == paid_subscription.id).one()
    assert txn.gateway_transaction_id == "pay_r1"
    assert TransactionMetadata.from_json(txn.meta).annotation("renewal") is not None

    # Same charge redelivered under a new event id
    redelivery = _charged(razorpay_event, paid_subscription, payment_id="pay_r1", event_id="evt_charged_again")
    redelivery["payload"]["subscription"]["entity"]["current_start"] = to_timestamp(old_end)
    service.ingest(_body(redelivery))
    db.expire_all()
    assert db.get(Subscription, paid_subscription.id).end_date == renewed_end
    assert db.query(Transaction).count() == 1
    renewals = [c for c in notifier.notify.call_args_list if c[0][1] == "renewal"]
    assert len(renewals) == 1


def test_repeated_pending_and_halted_keep_first_grace_deadline(db, service, paid_subscription, razorpay_event,
                                                              notifier):
    def pending(event_id):
        return razorpay_event("subscription.pending", subscription={"id": "sub_pro", "status": "pending"},
                              event_id=event_id)

    service.ingest(_body(pending("evt_pending_1")))
    db.expire_all()
    first = db.get(Subscription, paid_subscription.id)
    assert first.status == SubscriptionStatus.GRACE_PERIOD
    deadline = first.grace_period_end

    service.ingest(_body(pending("evt_pending_2")))
    halted = razorpay_event("subscription.halted", subscription={"id": "sub_pro", "status": "halted"},
                            event_id="evt_halted")
    service.ingest(_body(halted))

    db.expire_all()
    subscription = db.get(Subscription, paid_subscription.id)
    assert subscription.status == SubscriptionStatus.GRACE_PERIOD
    assert subscription.grace_period_end == deadline
    grace_notices = [c for c in notifier.notify.call_args_list if c[0][1] == "grace_period"]
    assert len(grace_notices) == 1


def test_two_failed_payments_after_period_end_enter_grace_once(db, service, plans, user, make_subscription,
                                                               razorpay_event, notifier):
    now = utcnow().replace(microsecond=0)
    lapsed = make_subscription(
        user, plans["pro"],
        start=now - timedelta(days=31),
        end=now - timedelta(days=1),
        gateway="razorpay", gateway_subscription_id="sub_lapsed",
    )

    def failed(payment_id):
        return razorpay_event(
            "payment.failed",
            payment={"id": payment_id, "amount": 2000, "currency": "USD", "status": "failed",
                     "subscription_id": "sub_lapsed"},
            event_id=f"evt_{payment_id}",
        )

    service.ingest(_body(failed("pay_fail_a")))
    db.expire_all()
    deadline = db.get(Subscription, lapsed.id).grace_period_end
    assert deadline is not None

    service.ingest(_body(failed("pay_fail_b")))

    db.expire_all()
    subscription = db.get(Subscription, lapsed.id)
    assert subscription.status == SubscriptionStatus.GRACE_PERIOD
    assert subscription.grace_period_end == deadline
    assert db.query(Transaction).filter(Transaction.status == TransactionStatus.FAILED).count() == 2
    grace_notices = [c for c in notifier.notify.call_args_list if c[0][1] == "grace_period"]
    assert len(grace_notices) == 1

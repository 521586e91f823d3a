"""
Invoice views and backfill of paid gateway invoices that never arrived by webhook.
Run: pytest tests/unit/test_invoice_service.py -v
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from billsync.core.errors import SubscriptionNotFoundError
from billsync.models.transaction import Transaction
from billsync.schemas.transaction import TransactionMetadata
from billsync.services.invoice_service import InvoiceService
from billsync.services.payment_gateway import GatewayInvoice


def _invoice(invoice_id, payment_id, amount, currency="USD", status="paid", day=1):
    return GatewayInvoice(
        id=invoice_id,
        payment_id=payment_id,
        amount=Decimal(amount),
        currency=currency,
        status=status,
        issued_at=datetime(2024, day, 1, tzinfo=timezone.utc),
    )


def test_invoice_view_includes_subscription_and_metadata(db, plans, user, make_subscription):
    subscription = make_subscription(user, plans["pro"], gateway="razorpay", gateway_subscription_id="sub_pro",
                                     paid=(Decimal("20.00"), "USD"))
    txn = db.query(Transaction).one()

    view = InvoiceService(db).build_invoice_view(txn.id, user_id=user.id)

    assert view.transaction.id == txn.id
    assert view.subscription.id == subscription.id
    assert view.metadata is not None


def test_invoice_of_another_user_is_not_found(db, plans, user, india_user, make_subscription):
    make_subscription(user, plans["pro"], gateway="razorpay", gateway_subscription_id="sub_pro",
                      paid=(Decimal("20.00"), "USD"))
    txn = db.query(Transaction).one()
    with pytest.raises(SubscriptionNotFoundError):
        InvoiceService(db).build_invoice_view(txn.id, user_id=india_user.id)


def test_list_for_user(db, plans, user, india_user, make_subscription):
    make_subscription(user, plans["pro"], gateway="razorpay", gateway_subscription_id="sub_pro",
                      paid=(Decimal("20.00"), "USD"))
    assert len(InvoiceService(db).list_for_user(user.id)) == 1
    assert InvoiceService(db).list_for_user(india_user.id) == []


def test_backfill_adds_missing_paid_invoices(db, plans, user, make_subscription, gateway):
    subscription = make_subscription(user, plans["pro"], gateway="razorpay", gateway_subscription_id="sub_pro",
                                     paid=(Decimal("20.00"), "USD"))
    seeded = f"pay_seed_{subscription.id}"
    gateway.invoices["sub_pro"] = [
        # Mandate authentication billed in INR at the Pro price
        _invoice("inv_1", "pay_auth", "999.00", currency="INR", day=1),
        _invoice("inv_2", seeded, "20.00", day=2),
        _invoice("inv_3", "pay_march", "20.00", day=3),
        _invoice("inv_4", None, "20.00", status="issued", day=4),
    ]

    added = InvoiceService(db).backfill_invoices(subscription.id, gateway)

    assert added == 2
    db.expire_all()
    auth = db.query(Transaction).filter(Transaction.gateway_transaction_id == "pay_auth").one()
    assert (auth.amount, auth.currency) == (Decimal("0.50"), "USD")
    assert TransactionMetadata.from_json(auth.meta).annotation("auth_charge_normalized") is not None
    march = db.query(Transaction).filter(Transaction.gateway_transaction_id == "pay_march").one()
    assert march.amount == Decimal("20.00")
    assert TransactionMetadata.from_json(march.meta).extra["invoice_id"] == "inv_3"

    # A second run finds nothing new
    assert InvoiceService(db).backfill_invoices(subscription.id, gateway) == 0


def test_backfill_skips_free_subscriptions(db, plans, user, make_subscription, gateway):
    subscription = make_subscription(user, plans["free"])
    assert InvoiceService(db).backfill_invoices(subscription.id, gateway) == 0


def test_backfill_unknown_subscription(db, gateway):
    with pytest.raises(SubscriptionNotFoundError):
        InvoiceService(db).backfill_invoices(999, gateway)

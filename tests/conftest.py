"""
Shared fixtures: in-memory SQLite with the real models, a deterministic gateway
and a catalog of three plans (Free, Basic $10 / 799 INR, Pro $20 / 999 INR).
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.pop("REDIS_URL", None)
os.environ.pop("RAZORPAY_KEY_ID", None)
os.environ.pop("RAZORPAY_KEY_SECRET", None)
os.environ.pop("RAZORPAY_WEBHOOK_SECRET", None)

from datetime import timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402
from unittest.mock import Mock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import billsync.models  # noqa: E402,F401
from billsync.db.base import Base  # noqa: E402
from billsync.models.plan import BillingCycle, Plan, PlanPrice  # noqa: E402
from billsync.models.subscription import GATEWAY_NONE, Subscription, SubscriptionStatus  # noqa: E402
from billsync.models.transaction import Transaction, TransactionStatus  # noqa: E402
from billsync.models.user import User  # noqa: E402
from billsync.services.notification_service import Notifier  # noqa: E402
from billsync.utils.billing_dates import utcnow  # noqa: E402

from tests.support import FakeGateway  # noqa: E402


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return Mock(spec=Notifier)


@pytest.fixture
def plans(db):
    free = Plan(name="Free", billing_cycle=BillingCycle.MONTHLY, is_freemium=True)
    basic = Plan(name="Basic", billing_cycle=BillingCycle.MONTHLY)
    pro = Plan(name="Pro", billing_cycle=BillingCycle.MONTHLY)
    db.add_all([free, basic, pro])
    db.flush()
    db.add_all([
        PlanPrice(plan_id=free.id, target_region="GLOBAL", currency="USD", amount=Decimal("0.00")),
        PlanPrice(plan_id=basic.id, target_region="GLOBAL", currency="USD", amount=Decimal("10.00")),
        PlanPrice(plan_id=basic.id, target_region="INDIA", currency="INR", amount=Decimal("799.00")),
        PlanPrice(plan_id=pro.id, target_region="GLOBAL", currency="USD", amount=Decimal("20.00")),
        PlanPrice(plan_id=pro.id, target_region="INDIA", currency="INR", amount=Decimal("999.00")),
    ])
    db.commit()
    return {"free": free, "basic": basic, "pro": pro}


@pytest.fixture
def user(db):
    user = User(email="ana@example.com", name="Ana", billing_country="US")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def india_user(db):
    user = User(email="ravi@example.in", name="Ravi", billing_country="IN")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def make_subscription(db):
    """Insert a subscription row (and optionally the payment that opened its cycle)."""

    def _make(user, plan, status=SubscriptionStatus.ACTIVE, start=None, end=None,
              gateway=GATEWAY_NONE, gateway_subscription_id=None, paid=None, **fields):
        start = start or utcnow().replace(microsecond=0) - timedelta(days=10)
        end = end or start + timedelta(days=30)
        subscription = Subscription(
            user_id=user.id,
            plan_id=plan.id,
            status=status,
            start_date=start,
            end_date=end,
            auto_renew=fields.pop("auto_renew", True),
            gateway=gateway,
            gateway_subscription_id=gateway_subscription_id,
            **fields,
        )
        db.add(subscription)
        db.flush()
        if paid is not None:
            amount, currency = paid
            db.add(Transaction(
                user_id=user.id,
                subscription_id=subscription.id,
                amount=amount,
                currency=currency,
                gateway=gateway,
                gateway_transaction_id=f"pay_seed_{subscription.id}",
                status=TransactionStatus.COMPLETED,
                meta={},
            ))
        db.commit()
        return subscription

    return _make


@pytest.fixture
def razorpay_event():
    """Build a Razorpay webhook envelope; amounts are minor units as on the wire."""

    def _build(event, subscription=None, payment=None, event_id=None, created_at=1717000000):
        payload = {}
        if subscription is not None:
            payload["subscription"] = {"entity": {"entity": "subscription", **subscription}}
        if payment is not None:
            payload["payment"] = {"entity": {"entity": "payment", **payment}}
        body = {
            "entity": "event",
            "account_id": "acc_test",
            "event": event,
            "contains": list(payload),
            "payload": payload,
            "created_at": created_at,
        }
        if event_id is not None:
            body["id"] = event_id
        return body

    return _build

"""
Development-only gateway. Nothing is charged and nothing leaves the process;
every call is logged as ``STUB GATEWAY`` and every result is marked simulated.
"""
import hashlib
import hmac
import logging
import uuid
from typing import Callable, Dict

from billsync.core.config import settings
from billsync.core.errors import UserNotFoundError
from billsync.db.session import SessionLocal
from billsync.repositories.plan_repository import PlanRepository
from billsync.repositories.user_repository import UserRepository
from billsync.services.payment_gateway import GatewaySubscription, PaymentGateway, PaymentIntent
from billsync.services.pricing_service import PricingService, region_for_country
from billsync.services.razorpay_service import GATEWAY_RAZORPAY, parse_razorpay_event
from billsync.utils.money import quantize

logger = logging.getLogger(__name__)

STUB_SECRET = "stub-gateway-secret"


class StubGateway(PaymentGateway):
    name = GATEWAY_RAZORPAY
    simulated = True

    def __init__(self, session_factory: Callable = SessionLocal):
        self.session_factory = session_factory
        # sim subscription id -> notes, read back by confirm
        self._notes: Dict[str, Dict[str, str]] = {}

    def _warn(self, operation: str, **context):
        logger.warning(f"STUB GATEWAY: {operation} simulated, no real payment call made", extra=context)

    @staticmethod
    def _sim_id(prefix: str) -> str:
        return f"sim_{prefix}_{uuid.uuid4().hex[:14]}"

    def create_payment_intent(self, amount, currency, metadata):
        self._warn("create_payment_intent", amount=str(amount), currency=currency)
        return PaymentIntent(
            id=self._sim_id("order"),
            amount=quantize(amount, currency),
            currency=currency.upper(),
            status="created",
            simulated=True,
        )

    def create_subscription(self, plan_id, user_id, metadata):
        self._warn("create_subscription", plan_id=plan_id, user_id=user_id)
        db = self.session_factory()
        try:
            user = UserRepository(db).get_by_id(user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")
            pricing = PricingService(PlanRepository(db))
            plan = pricing.get_plan(plan_id)
            price = pricing.get_price(plan.id, region_for_country(user.billing_country))
            external_id = self._sim_id("sub")
            self._notes[external_id] = {
                "internal_user_id": str(user.id),
                "internal_plan_id": str(plan.id),
                **{k: str(v) for k, v in (metadata.get("notes") or {}).items()},
            }
            return GatewaySubscription(
                external_subscription_id=external_id,
                amount=quantize(price.amount, price.currency),
                currency=price.currency.upper(),
                status="created",
                start_at=metadata.get("start_at"),
                simulated=True,
            )
        finally:
            db.close()

    def sign_payment(self, payment_id: str, subscription_id: str = None) -> str:
        """Signature the stub accepts, for driving the checkout flow by hand."""
        message = f"{payment_id}|{subscription_id}" if subscription_id else payment_id
        return hmac.new(STUB_SECRET.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_payment(self, payment_id, signature, subscription_id=None):
        self._warn("verify_payment", payment_id=payment_id)
        try:
            return hmac.compare_digest(self.sign_payment(payment_id, subscription_id), signature or "")
        except Exception as e:
            logger.warning(f"STUB GATEWAY: signature check error: {e}")
            return False

    def cancel_subscription(self, external_id, at_cycle_end):
        self._warn("cancel_subscription", gateway_subscription_id=external_id)
        return {"id": external_id, "status": "active" if at_cycle_end else "cancelled", "simulated": True}

    def update_subscription(self, external_id, options):
        self._warn("update_subscription", gateway_subscription_id=external_id)
        return {"id": external_id, "simulated": True, **options}

    def get_subscription(self, external_id):
        self._warn("get_subscription", gateway_subscription_id=external_id)
        return {"id": external_id, "status": "active", "notes": self._notes.get(external_id, {}), "simulated": True}

    def fetch_invoices_for_subscription(self, external_id):
        self._warn("fetch_invoices_for_subscription", gateway_subscription_id=external_id)
        return []

    def verify_webhook_signature(self, body, signature):
        secret = settings.RAZORPAY_WEBHOOK_SECRET or STUB_SECRET
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature or "")

    def parse_webhook(self, raw_event, event_id=None):
        return parse_razorpay_event(raw_event, gateway_name=self.name, event_id=event_id)

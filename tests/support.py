"""Test doubles shared by the unit tests."""
import hashlib
import hmac
from decimal import Decimal

from billsync.services.payment_gateway import GatewaySubscription, PaymentGateway, PaymentIntent
from billsync.services.razorpay_service import GATEWAY_RAZORPAY, parse_razorpay_event

WEBHOOK_SECRET = "whsec_test"


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class FakeGateway(PaymentGateway):
    """Records every call; parses webhooks with the real Razorpay parser."""

    name = GATEWAY_RAZORPAY

    def __init__(self):
        self.created = []
        self.cancelled = []
        self.remote = {}
        self.invoices = {}
        self._seq = 0

    def create_payment_intent(self, amount, currency, metadata):
        return PaymentIntent(id="order_test", amount=amount, currency=currency, status="created")

    def create_subscription(self, plan_id, user_id, metadata):
        self._seq += 1
        self.created.append({"plan_id": plan_id, "user_id": user_id, "metadata": metadata})
        external_id = f"sub_test_{self._seq}"
        self.remote[external_id] = {
            "id": external_id,
            "status": "created",
            "notes": {"internal_user_id": str(user_id), "internal_plan_id": str(plan_id)},
        }
        return GatewaySubscription(
            external_subscription_id=external_id,
            amount=Decimal("20.00"),
            currency="USD",
            status="created",
            short_url=f"https://rzp.example/{self._seq}",
            start_at=metadata.get("start_at"),
        )

    def verify_payment(self, payment_id, signature, subscription_id=None):
        return signature == "valid"

    def cancel_subscription(self, external_id, at_cycle_end):
        self.cancelled.append((external_id, at_cycle_end))
        return {"id": external_id, "status": "cancelled"}

    def update_subscription(self, external_id, options):
        return {"id": external_id, **options}

    def get_subscription(self, external_id):
        return self.remote.get(external_id, {"id": external_id})

    def fetch_invoices_for_subscription(self, external_id):
        return self.invoices.get(external_id, [])

    def verify_webhook_signature(self, body, signature):
        return bool(signature) and hmac.compare_digest(sign(body), signature)

    def parse_webhook(self, raw_event, event_id=None):
        return parse_razorpay_event(raw_event, gateway_name=self.name, event_id=event_id)

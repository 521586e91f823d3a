import hashlib
import hmac
import logging
from typing import Any, Callable, Dict, List, Optional

import requests
from pydantic import ValidationError

from billsync.core.config import settings
from billsync.core.errors import (
    GatewayRequestError,
    GatewayUnavailableError,
    MalformedWebhookError,
    UserNotFoundError,
)
from billsync.db.session import SessionLocal
from billsync.models.plan import BillingCycle, Plan, PlanPrice
from billsync.models.user import User
from billsync.repositories.customer_mapping_repository import CustomerMappingRepository
from billsync.repositories.plan_repository import PlanRepository
from billsync.repositories.user_repository import UserRepository
from billsync.schemas.webhook import (
    GatewayEvent,
    PaymentInfo,
    RazorpayPaymentEntity,
    RazorpaySubscriptionEntity,
    RazorpayWebhookEnvelope,
    SubscriptionInfo,
    WebhookEventType,
)
from billsync.services.payment_gateway import (
    GatewayInvoice,
    GatewaySubscription,
    PaymentGateway,
    PaymentIntent,
)
from billsync.services.pricing_service import PricingService, region_for_country
from billsync.utils.billing_dates import from_timestamp, to_timestamp
from billsync.utils.money import from_minor_units, quantize, to_minor_units

logger = logging.getLogger(__name__)

GATEWAY_RAZORPAY = "razorpay"

_PERIODS = {
    BillingCycle.MONTHLY: "monthly",
    BillingCycle.YEARLY: "yearly",
}


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _deterministic_event_id(envelope: RazorpayWebhookEnvelope) -> str:
    parts = [envelope.event]
    for wrapper in (envelope.payload.subscription, envelope.payload.payment):
        if wrapper is not None and wrapper.entity.get("id"):
            parts.append(str(wrapper.entity["id"]))
    if envelope.created_at:
        parts.append(str(envelope.created_at))
    return ":".join(parts)


def parse_razorpay_event(
    raw_event: Dict[str, Any],
    gateway_name: str = GATEWAY_RAZORPAY,
    event_id: Optional[str] = None,
) -> Optional[GatewayEvent]:
    """Razorpay envelope -> ``GatewayEvent``; minor units become Decimal here."""
    if not isinstance(raw_event, dict):
        raise MalformedWebhookError("Webhook body must be a JSON object")
    try:
        envelope = RazorpayWebhookEnvelope.model_validate(raw_event)
    except ValidationError as e:
        raise MalformedWebhookError(f"Invalid webhook envelope: {e.errors()[0].get('msg')}") from e

    event_type = WebhookEventType.parse(envelope.event)
    if event_type is None:
        return None

    payment = None
    subscription = None
    try:
        if envelope.payload.payment is not None:
            entity = RazorpayPaymentEntity.model_validate(envelope.payload.payment.entity)
            currency = entity.currency.upper()
            payment = PaymentInfo(
                id=entity.id,
                amount=from_minor_units(entity.amount, currency),
                currency=currency,
                status=entity.status,
                method=entity.method,
                order_id=entity.order_id,
                invoice_id=entity.invoice_id,
                subscription_id=entity.subscription_id,
                customer_id=entity.customer_id,
                email=entity.email,
                error_description=entity.error_description,
                notes=entity.notes,
            )
        if envelope.payload.subscription is not None:
            entity = RazorpaySubscriptionEntity.model_validate(envelope.payload.subscription.entity)
            subscription = SubscriptionInfo(
                id=entity.id,
                plan_id=entity.plan_id,
                customer_id=entity.customer_id,
                status=entity.status,
                current_start=from_timestamp(entity.current_start),
                current_end=from_timestamp(entity.current_end),
                notes=entity.notes,
            )
    except ValidationError as e:
        raise MalformedWebhookError(f"Invalid {envelope.event} entity: {e.errors()[0].get('msg')}") from e

    if event_type.needs_payment and payment is None:
        raise MalformedWebhookError(f"{envelope.event} without a payment entity")
    if event_type.needs_subscription and subscription is None:
        raise MalformedWebhookError(f"{envelope.event} without a subscription entity")

    return GatewayEvent(
        gateway=gateway_name,
        event_type=event_type,
        external_event_id=event_id or envelope.id or _deterministic_event_id(envelope),
        payment=payment,
        subscription=subscription,
        raw=raw_event,
    )


class RazorpayGateway(PaymentGateway):
    name = GATEWAY_RAZORPAY

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: Optional[str] = None,
        api_base: str = "https://api.razorpay.com/v1",
        timeout: float = 15.0,
        session_factory: Callable = SessionLocal,
        http: Optional[requests.Session] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.session_factory = session_factory
        self.http = http or requests.Session()

    @classmethod
    def from_settings(cls) -> "RazorpayGateway":
        return cls(
            key_id=settings.RAZORPAY_KEY_ID,
            key_secret=settings.RAZORPAY_KEY_SECRET,
            webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
            api_base=settings.RAZORPAY_API_BASE,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )

    # HTTP

    def _request(self, method: str, path: str, json: Dict[str, Any] = None, params: Dict[str, Any] = None) -> Dict[str, Any]:
        url = f"{self.api_base}{path}"
        try:
            resp = self.http.request(
                method,
                url,
                json=json,
                params=params,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise GatewayUnavailableError(f"Razorpay {method} {path} timed out after {self.timeout}s") from e
        except requests.ConnectionError as e:
            raise GatewayUnavailableError(f"Razorpay unreachable: {e}") from e

        if resp.status_code >= 400:
            description = resp.text[:200]
            try:
                description = resp.json().get("error", {}).get("description") or description
            except ValueError:
                pass
            logger.error(f"Razorpay {method} {path} failed: {resp.status_code} {description}")
            raise GatewayRequestError(
                f"Razorpay rejected {method} {path}: {description}",
                provider_status=resp.status_code,
            )
        return resp.json() if resp.content else {}

    def check_connection(self) -> None:
        """Cheap authenticated call so bad credentials surface at init, not at checkout."""
        self._request("GET", "/plans", params={"count": 1})

    # Payer / plan objects

    def _ensure_customer(self, db, user: User) -> str:
        mappings = CustomerMappingRepository(db)
        mapping = mappings.get_customer(self.name, user.id)
        if mapping is not None:
            return mapping.gateway_customer_id

        customer_id = None
        listing = self._request("GET", "/customers", params={"count": 100})
        for item in listing.get("items", []):
            notes = item.get("notes") if isinstance(item.get("notes"), dict) else {}
            same_email = (item.get("email") or "").lower() == user.email.lower()
            # Only reuse a payer we created for this user
            if same_email and str(notes.get("internal_user_id")) == str(user.id):
                customer_id = item["id"]
                break

        if customer_id is None:
            created = self._request("POST", "/customers", json={
                "name": user.name or user.email,
                "email": user.email,
                "fail_existing": "0",
                "notes": {"internal_user_id": str(user.id)},
            })
            customer_id = created["id"]
            logger.info(f"Created Razorpay customer {customer_id} for user {user.id}")

        mappings.upsert_customer(self.name, user.id, customer_id)
        user.gateway_customer_id = customer_id
        return customer_id

    def _ensure_plan(self, db, plan: Plan, price: PlanPrice) -> str:
        mappings = CustomerMappingRepository(db)
        currency = price.currency.upper()
        mapping = mappings.get_plan(self.name, plan.id, currency)
        if mapping is not None:
            remote = self._request("GET", f"/plans/{mapping.external_plan_id}")
            remote_currency = str((remote.get("item") or {}).get("currency") or "").upper()
            if remote_currency == currency:
                return mapping.external_plan_id
            logger.warning(
                f"Gateway plan {mapping.external_plan_id} for plan {plan.id} is in {remote_currency}, "
                f"expected {currency}; recreating"
            )
            mappings.delete_plan(mapping)

        created = self._request("POST", "/plans", json={
            "period": _PERIODS[plan.billing_cycle],
            "interval": 1,
            "item": {
                "name": plan.name,
                "amount": to_minor_units(price.amount, currency),
                "currency": currency,
                "description": plan.description or plan.name,
            },
            "notes": {"internal_plan_id": str(plan.id), "target_region": price.target_region},
        })
        mappings.upsert_plan(self.name, plan.id, currency, created["id"])
        return created["id"]

    # PaymentGateway

    def create_payment_intent(self, amount, currency, metadata):
        currency = currency.upper()
        order = self._request("POST", "/orders", json={
            "amount": to_minor_units(amount, currency),
            "currency": currency,
            "receipt": str(metadata.get("receipt") or ""),
            "notes": {k: str(v) for k, v in metadata.items()},
        })
        return PaymentIntent(
            id=order["id"],
            amount=from_minor_units(order.get("amount"), currency),
            currency=currency,
            status=order.get("status", "created"),
        )

    def create_subscription(self, plan_id, user_id, metadata):
        db = self.session_factory()
        try:
            user = UserRepository(db).get_by_id(user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")
            pricing = PricingService(PlanRepository(db))
            plan = pricing.get_plan(plan_id)
            region = region_for_country(user.billing_country)
            # Fails before any HTTP call when the catalog is inconsistent
            price = pricing.get_price(plan.id, region)
            currency = price.currency.upper()

            customer_id = self._ensure_customer(db, user)
            external_plan_id = self._ensure_plan(db, plan, price)
            db.commit()

            total_count = (
                settings.RAZORPAY_YEARLY_TOTAL_COUNT
                if plan.billing_cycle == BillingCycle.YEARLY
                else settings.RAZORPAY_MONTHLY_TOTAL_COUNT
            )
            notes = {
                "internal_user_id": str(user.id),
                "internal_plan_id": str(plan.id),
                "target_region": region,
            }
            notes.update({k: str(v) for k, v in (metadata.get("notes") or {}).items()})
            body = {
                "plan_id": external_plan_id,
                "customer_id": customer_id,
                "total_count": total_count,
                "quantity": 1,
                "customer_notify": 1,
                "notes": notes,
            }
            start_at = metadata.get("start_at")
            if start_at is not None:
                body["start_at"] = to_timestamp(start_at)

            created = self._request("POST", "/subscriptions", json=body)
            logger.info(
                "Razorpay subscription created",
                extra={"user_id": user.id, "plan_id": plan.id, "gateway_subscription_id": created["id"]},
            )
            return GatewaySubscription(
                external_subscription_id=created["id"],
                amount=quantize(price.amount, currency),
                currency=currency,
                status=created.get("status", "created"),
                short_url=created.get("short_url"),
                start_at=start_at,
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def verify_payment(self, payment_id, signature, subscription_id=None):
        try:
            if not payment_id or not signature:
                return False
            message = f"{payment_id}|{subscription_id}" if subscription_id else payment_id
            expected = _hmac_hex(self.key_secret, message.encode("utf-8"))
            return hmac.compare_digest(expected, signature)
        except Exception as e:
            logger.warning(f"Payment signature verification error: {e}")
            return False

    def cancel_subscription(self, external_id, at_cycle_end):
        logger.info(f"Cancelling Razorpay subscription {external_id} (at_cycle_end={at_cycle_end})")
        return self._request(
            "POST",
            f"/subscriptions/{external_id}/cancel",
            json={"cancel_at_cycle_end": 1 if at_cycle_end else 0},
        )

    def update_subscription(self, external_id, options):
        return self._request("PATCH", f"/subscriptions/{external_id}", json=options)

    def get_subscription(self, external_id):
        return self._request("GET", f"/subscriptions/{external_id}")

    def fetch_invoices_for_subscription(self, external_id):
        listing = self._request("GET", "/invoices", params={"subscription_id": external_id, "count": 100})
        invoices = []
        for item in listing.get("items", []):
            currency = str(item.get("currency") or settings.DEFAULT_CURRENCY).upper()
            invoices.append(GatewayInvoice(
                id=item["id"],
                payment_id=item.get("payment_id"),
                amount=from_minor_units(item.get("amount_paid") or item.get("amount") or 0, currency),
                currency=currency,
                status=item.get("status", ""),
                issued_at=from_timestamp(item.get("issued_at") or item.get("created_at")),
                billing_start=from_timestamp(item.get("billing_start")),
                billing_end=from_timestamp(item.get("billing_end")),
                raw=item,
            ))
        invoices.sort(key=lambda inv: to_timestamp(inv.issued_at) if inv.issued_at else 0)
        return invoices

    def verify_webhook_signature(self, body, signature):
        if not self.webhook_secret or not signature:
            return False
        expected = _hmac_hex(self.webhook_secret, body)
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, raw_event, event_id=None):
        return parse_razorpay_event(raw_event, gateway_name=self.name, event_id=event_id)

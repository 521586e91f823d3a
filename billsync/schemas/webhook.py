"""
Razorpay webhook envelopes.

Two layers live here: the raw provider shapes (amounts in minor units, unix
timestamps) validated straight off the wire, and the normalized
``GatewayEvent`` the rest of the engine works with (``Decimal`` amounts,
aware datetimes).
"""
import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class WebhookEventType(str, enum.Enum):
    PAYMENT_AUTHORIZED = "payment.authorized"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    SUBSCRIPTION_AUTHENTICATED = "subscription.authenticated"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_CHARGED = "subscription.charged"
    SUBSCRIPTION_COMPLETED = "subscription.completed"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_PENDING = "subscription.pending"
    SUBSCRIPTION_HALTED = "subscription.halted"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"

    @classmethod
    def parse(cls, value: str) -> Optional["WebhookEventType"]:
        try:
            return cls(value)
        except ValueError:
            return None

    @property
    def needs_payment(self) -> bool:
        return self.value.startswith("payment.") or self is WebhookEventType.SUBSCRIPTION_CHARGED

    @property
    def needs_subscription(self) -> bool:
        return self.value.startswith("subscription.")


def _notes(value: Any) -> Dict[str, Any]:
    # Razorpay serializes empty notes as []
    if isinstance(value, dict):
        return value
    return {}


class RazorpayPaymentEntity(BaseModel):
    id: str
    amount: int = 0
    currency: str
    status: Optional[str] = None
    method: Optional[str] = None
    order_id: Optional[str] = None
    invoice_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    email: Optional[str] = None
    error_description: Optional[str] = None
    notes: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[int] = None

    @field_validator("notes", mode="before")
    @classmethod
    def clean_notes(cls, value):
        return _notes(value)

    class Config:
        extra = "allow"


class RazorpaySubscriptionEntity(BaseModel):
    id: str
    plan_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[str] = None
    current_start: Optional[int] = None
    current_end: Optional[int] = None
    charge_at: Optional[int] = None
    paid_count: Optional[int] = None
    notes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("notes", mode="before")
    @classmethod
    def clean_notes(cls, value):
        return _notes(value)

    class Config:
        extra = "allow"


class _EntityWrapper(BaseModel):
    entity: Dict[str, Any]


class RazorpayWebhookPayload(BaseModel):
    payment: Optional[_EntityWrapper] = None
    subscription: Optional[_EntityWrapper] = None

    class Config:
        extra = "allow"


class RazorpayWebhookEnvelope(BaseModel):
    event: str = Field(..., min_length=1)
    payload: RazorpayWebhookPayload
    id: Optional[str] = None
    entity: Optional[str] = None
    account_id: Optional[str] = None
    created_at: Optional[int] = None

    class Config:
        extra = "allow"


class PaymentInfo(BaseModel):
    id: str
    amount: Decimal
    currency: str
    status: Optional[str] = None
    method: Optional[str] = None
    order_id: Optional[str] = None
    invoice_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    email: Optional[str] = None
    error_description: Optional[str] = None
    notes: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionInfo(BaseModel):
    id: str
    plan_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[str] = None
    current_start: Optional[datetime] = None
    current_end: Optional[datetime] = None
    notes: Dict[str, Any] = Field(default_factory=dict)


class GatewayEvent(BaseModel):
    gateway: str
    event_type: WebhookEventType
    external_event_id: str
    payment: Optional[PaymentInfo] = None
    subscription: Optional[SubscriptionInfo] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def gateway_subscription_id(self) -> Optional[str]:
        if self.subscription is not None:
            return self.subscription.id
        if self.payment is not None:
            return (
                self.payment.subscription_id
                or self.payment.notes.get("subscription_id")
                or self.payment.notes.get("razorpay_subscription_id")
            )
        return None


class WebhookResult(BaseModel):
    processed: bool
    event_type: str
    duplicate: bool = False
    ignored: bool = False
    simulated: bool = False

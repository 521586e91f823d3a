from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from billsync.schemas.transaction import TransactionMetadata, TransactionResponse


class SubscriptionResponse(BaseModel):
    id: int
    plan_id: int
    plan_name: Optional[str] = None
    status: str
    start_date: datetime
    end_date: datetime
    auto_renew: bool
    grace_period_end: Optional[datetime] = None
    gateway: str
    gateway_subscription_id: Optional[str] = None
    previous_plan_id: Optional[int] = None
    pending_change_to_plan_id: Optional[int] = None
    pending_change_effective_date: Optional[datetime] = None

    @classmethod
    def from_model(cls, subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            plan_id=subscription.plan_id,
            plan_name=subscription.plan.name if subscription.plan else None,
            status=subscription.status.value,
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            auto_renew=subscription.auto_renew,
            grace_period_end=subscription.grace_period_end,
            gateway=subscription.gateway,
            gateway_subscription_id=subscription.gateway_subscription_id,
            previous_plan_id=subscription.previous_plan_id,
            pending_change_to_plan_id=subscription.pending_change_to_plan_id,
            pending_change_effective_date=subscription.pending_change_effective_date,
        )


class SubscriptionStatusResponse(BaseModel):
    has_active_subscription: bool
    subscription: Optional[SubscriptionResponse] = None


class ProrationQuoteResponse(BaseModel):
    current_plan_id: Optional[int] = None
    new_plan_id: int
    is_upgrade: bool
    is_fresh_activation: bool
    currency: str
    current_price: Decimal
    new_price: Decimal
    remaining_fraction: Decimal
    remaining_value: Decimal
    amount_due: Decimal
    credit: Decimal
    effective_date: datetime


class PlanSelectionRequest(BaseModel):
    plan_id: int = Field(..., gt=0)


class CheckoutResponse(BaseModel):
    gateway: str
    gateway_subscription_id: str
    short_url: Optional[str] = None
    key_id: Optional[str] = None
    plan_id: int
    amount: Decimal
    currency: str
    amount_due: Decimal
    is_upgrade: bool
    simulated: bool = False


class ConfirmPaymentRequest(BaseModel):
    plan_id: int = Field(..., gt=0)
    payment_id: str = Field(..., min_length=1)
    gateway_subscription_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class DowngradeResponse(BaseModel):
    subscription: SubscriptionResponse
    pending_change_to_plan_id: int
    effective_date: datetime
    credit_amount: Decimal
    currency: str
    gateway_subscription_id: Optional[str] = None


class CancelSubscriptionResponse(BaseModel):
    message: str
    subscription_cancelled: bool
    access_until: Optional[datetime] = None


class InvoiceView(BaseModel):
    """Read-only invoice: the transaction with the subscription and plan it paid for."""
    transaction: TransactionResponse
    subscription: SubscriptionResponse
    metadata: TransactionMetadata


class InvoiceListResponse(BaseModel):
    invoices: List[TransactionResponse]

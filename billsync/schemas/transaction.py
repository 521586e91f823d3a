from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class PlanSnapshot(BaseModel):
    """The plan as it was when the money moved."""
    id: int
    name: str
    billing_cycle: str
    price: Optional[Decimal] = None
    currency: Optional[str] = None


class CurrencyMismatch(BaseModel):
    kind: Literal["currency_mismatch"] = "currency_mismatch"
    expected_currency: str
    actual_currency: str
    reported_amount: Decimal
    recorded_amount: Decimal
    region: str


class AuthChargeNormalized(BaseModel):
    kind: Literal["auth_charge_normalized"] = "auth_charge_normalized"
    reported_amount: Decimal
    reported_currency: str
    matched_plan_id: int
    normalized_amount: Decimal
    normalized_currency: str


class RenewalAnnotation(BaseModel):
    kind: Literal["renewal"] = "renewal"
    cycle_start: datetime
    cycle_end: datetime
    billing_cycle: str
    source: Literal["gateway", "scheduler"] = "gateway"


class DowngradeCredit(BaseModel):
    kind: Literal["downgrade_credit"] = "downgrade_credit"
    credit_amount: Decimal
    currency: str
    from_plan_id: Optional[int] = None
    to_plan_id: Optional[int] = None


Annotation = Annotated[
    Union[CurrencyMismatch, AuthChargeNormalized, RenewalAnnotation, DowngradeCredit],
    Field(discriminator="kind"),
]


class TransactionMetadata(BaseModel):
    plan: Optional[PlanSnapshot] = None
    annotations: List[Annotation] = Field(default_factory=list)
    # Free-form extension data (payment method, gateway invoice id, proration quote...)
    extra: Dict[str, Any] = Field(default_factory=dict)

    def annotation(self, kind: str):
        return next((a for a in self.annotations if a.kind == kind), None)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_json(cls, raw: Optional[Dict[str, Any]]) -> "TransactionMetadata":
        return cls.model_validate(raw or {})


class TransactionResponse(BaseModel):
    id: int
    subscription_id: int
    amount: Decimal
    currency: str
    gateway: str
    gateway_transaction_id: str
    status: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

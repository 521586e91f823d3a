from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel


class PlanPriceInfo(BaseModel):
    target_region: str
    currency: str
    amount: Decimal

    class Config:
        from_attributes = True


class PlanInfo(BaseModel):
    """A plan as shown in the public catalog, priced for one region."""
    id: int
    name: str
    description: Optional[str] = None
    billing_cycle: str
    is_freemium: bool
    region: str
    currency: Optional[str] = None
    price: Optional[Decimal] = None


class PlansResponse(BaseModel):
    region: str
    plans: List[PlanInfo]

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from billsync.core.config import settings
from billsync.db.session import get_db
from billsync.repositories.plan_repository import PlanRepository
from billsync.schemas.plan import PlanInfo, PlansResponse
from billsync.services.pricing_service import PricingService

router = APIRouter(tags=["plans"])


@router.get("", response_model=PlansResponse)
def list_plans(
    region: Optional[str] = Query(None, description="Pricing region, e.g. INDIA or GLOBAL"),
    db: Session = Depends(get_db),
):
    """Public plan catalog priced for one region (GLOBAL prices fill the gaps)."""
    region = (region or settings.DEFAULT_REGION).strip().upper()
    catalog = PricingService(PlanRepository(db)).list_catalog(region)
    return PlansResponse(region=region, plans=[PlanInfo(**item) for item in catalog])

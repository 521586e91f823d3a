from typing import List, Optional

from sqlalchemy.orm import Session, selectinload

from billsync.models.plan import Plan, PlanPrice


class PlanRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, plan_id: int) -> Optional[Plan]:
        return self.db.query(Plan).filter(Plan.id == plan_id).first()

    def list_active(self) -> List[Plan]:
        return (
            self.db.query(Plan)
            .options(selectinload(Plan.prices))
            .filter(Plan.is_active.is_(True))
            .order_by(Plan.id)
            .all()
        )

    def get_price(self, plan_id: int, region: str) -> Optional[PlanPrice]:
        return (
            self.db.query(PlanPrice)
            .filter(PlanPrice.plan_id == plan_id, PlanPrice.target_region == region)
            .first()
        )

    def list_prices_in_currency(self, currency: str) -> List[PlanPrice]:
        return (
            self.db.query(PlanPrice)
            .join(Plan, Plan.id == PlanPrice.plan_id)
            .filter(PlanPrice.currency == currency.upper())
            .all()
        )

    def create(self, plan: Plan) -> Plan:
        self.db.add(plan)
        self.db.flush()
        return plan

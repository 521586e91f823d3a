from typing import Optional

from sqlalchemy.orm import Session

from billsync.models.customer_mapping import CustomerMapping, GatewayPlanMapping


class CustomerMappingRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_customer(self, gateway: str, user_id: int) -> Optional[CustomerMapping]:
        return (
            self.db.query(CustomerMapping)
            .filter(CustomerMapping.gateway == gateway, CustomerMapping.user_id == user_id)
            .first()
        )

    def upsert_customer(self, gateway: str, user_id: int, gateway_customer_id: str) -> CustomerMapping:
        mapping = self.get_customer(gateway, user_id)
        if mapping is None:
            mapping = CustomerMapping(gateway=gateway, user_id=user_id, gateway_customer_id=gateway_customer_id)
            self.db.add(mapping)
        else:
            mapping.gateway_customer_id = gateway_customer_id
        self.db.flush()
        return mapping

    def get_plan(self, gateway: str, plan_id: int, currency: str) -> Optional[GatewayPlanMapping]:
        return (
            self.db.query(GatewayPlanMapping)
            .filter(
                GatewayPlanMapping.gateway == gateway,
                GatewayPlanMapping.plan_id == plan_id,
                GatewayPlanMapping.currency == currency,
            )
            .first()
        )

    def upsert_plan(self, gateway: str, plan_id: int, currency: str, external_plan_id: str) -> GatewayPlanMapping:
        mapping = self.get_plan(gateway, plan_id, currency)
        if mapping is None:
            mapping = GatewayPlanMapping(
                gateway=gateway, plan_id=plan_id, currency=currency, external_plan_id=external_plan_id
            )
            self.db.add(mapping)
        else:
            mapping.external_plan_id = external_plan_id
        self.db.flush()
        return mapping

    def delete_plan(self, mapping: GatewayPlanMapping) -> None:
        self.db.delete(mapping)
        self.db.flush()

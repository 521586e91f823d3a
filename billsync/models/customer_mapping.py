from sqlalchemy import Column, Integer, String, ForeignKey, UniqueConstraint, func

from billsync.db.base import Base
from billsync.db.types import UTCDateTime


class CustomerMapping(Base):
    """Our user <-> the gateway's payer record, so payers are never created twice."""

    __tablename__ = "customer_mappings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    gateway = Column(String(32), nullable=False)
    gateway_customer_id = Column(String(255), nullable=False)
    created_at = Column(UTCDateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("gateway", "user_id", name="uq_customer_mappings_gateway_user"),
    )


class GatewayPlanMapping(Base):
    """Gateway-side plan object for an internal plan in one currency."""

    __tablename__ = "gateway_plan_mappings"

    id = Column(Integer, primary_key=True, index=True)
    gateway = Column(String(32), nullable=False)
    plan_id = Column(Integer, ForeignKey("plans.id", ondelete="CASCADE"), nullable=False)
    currency = Column(String(3), nullable=False)
    external_plan_id = Column(String(255), nullable=False)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("gateway", "plan_id", "currency", name="uq_gateway_plan_mappings_key"),
    )

import enum

from sqlalchemy import Column, Integer, String, Boolean, Enum, ForeignKey, Numeric, UniqueConstraint, CheckConstraint, func
from sqlalchemy.orm import relationship

from billsync.db.base import Base
from billsync.db.types import UTCDateTime


class BillingCycle(str, enum.Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class Plan(Base):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    description = Column(String, nullable=True)
    billing_cycle = Column(
        Enum(BillingCycle, native_enum=False, length=10, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=BillingCycle.MONTHLY,
    )
    is_freemium = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())

    prices = relationship("PlanPrice", back_populates="plan", cascade="all, delete-orphan")


class PlanPrice(Base):
    __tablename__ = "plan_prices"

    id = Column(Integer, primary_key=True, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id", ondelete="CASCADE"), nullable=False, index=True)
    target_region = Column(String(20), nullable=False, default="GLOBAL")
    currency = Column(String(3), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())

    plan = relationship("Plan", back_populates="prices")

    __table_args__ = (
        UniqueConstraint("plan_id", "target_region", name="uq_plan_prices_plan_region"),
        CheckConstraint("amount >= 0", name="ck_plan_prices_amount_non_negative"),
    )

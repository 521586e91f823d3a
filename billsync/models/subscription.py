import enum

from sqlalchemy import Column, Integer, String, Boolean, Enum, ForeignKey, Index, Numeric, text, func
from sqlalchemy.orm import relationship

from billsync.db.base import Base
from billsync.db.types import UTCDateTime

GATEWAY_NONE = "none"


class SubscriptionStatus(str, enum.Enum):
    CREATED = "CREATED"
    ACTIVE = "ACTIVE"
    GRACE_PERIOD = "GRACE_PERIOD"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


LIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD)
TERMINAL_STATUSES = (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED)

_LIVE_PREDICATE = text("status IN ('ACTIVE', 'GRACE_PERIOD')")


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False, index=True)
    status = Column(
        Enum(SubscriptionStatus, native_enum=False, length=20, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=SubscriptionStatus.CREATED,
        index=True,
    )
    start_date = Column(UTCDateTime, nullable=False)
    end_date = Column(UTCDateTime, nullable=False, index=True)
    auto_renew = Column(Boolean, nullable=False, default=True)
    grace_period_end = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)

    gateway = Column(String(32), nullable=False, default=GATEWAY_NONE)
    gateway_subscription_id = Column(String(255), nullable=True)

    previous_plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)
    pending_change_to_plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)
    pending_change_effective_date = Column(UTCDateTime, nullable=True, index=True)
    # Downgrade credit applied to the first cycle of this subscription
    credit_amount = Column(Numeric(14, 2), nullable=True)
    credit_currency = Column(String(3), nullable=True)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User", backref="subscriptions")
    plan = relationship("Plan", foreign_keys=[plan_id])
    previous_plan = relationship("Plan", foreign_keys=[previous_plan_id])
    pending_change_to_plan = relationship("Plan", foreign_keys=[pending_change_to_plan_id])

    __table_args__ = (
        # At most one ACTIVE or GRACE_PERIOD subscription per user
        Index(
            "uq_subscriptions_user_live",
            "user_id",
            unique=True,
            postgresql_where=_LIVE_PREDICATE,
            sqlite_where=_LIVE_PREDICATE,
        ),
        Index("idx_subscriptions_status_end", "status", "end_date"),
        Index("idx_subscriptions_gateway_ref", "gateway", "gateway_subscription_id"),
    )

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_paid(self) -> bool:
        return self.gateway != GATEWAY_NONE and bool(self.gateway_subscription_id)

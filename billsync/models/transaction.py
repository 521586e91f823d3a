import enum

from sqlalchemy import Column, Integer, String, Enum, ForeignKey, Index, Numeric, UniqueConstraint, func
from sqlalchemy.orm import relationship

from billsync.db.base import Base
from billsync.db.types import JSONType, UTCDateTime


class TransactionStatus(str, enum.Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    gateway = Column(String(32), nullable=False)
    gateway_transaction_id = Column(String(255), nullable=False)
    status = Column(
        Enum(TransactionStatus, native_enum=False, length=20, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    # Serialized TransactionMetadata (see billsync/schemas/transaction.py)
    meta = Column("metadata", JSONType, nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now(), index=True)

    # Relationships
    subscription = relationship("Subscription", backref="transactions")

    __table_args__ = (
        UniqueConstraint("gateway", "gateway_transaction_id", name="uq_transactions_gateway_txn"),
        Index("idx_transactions_subscription_created", "subscription_id", "created_at"),
    )

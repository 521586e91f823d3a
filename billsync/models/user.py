from sqlalchemy import Column, Integer, String, Boolean, func

from billsync.db.base import Base
from billsync.db.types import UTCDateTime


class User(Base):
    """Billing view of an account; identity and credentials live in the auth service."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    billing_country = Column(String(2), nullable=True)  # ISO 3166-1 alpha-2
    gateway_customer_id = Column(String(255), nullable=True, index=True)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())

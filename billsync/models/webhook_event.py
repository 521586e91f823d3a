from sqlalchemy import Column, Integer, String, Boolean, Text, UniqueConstraint, func

from billsync.db.base import Base
from billsync.db.types import JSONType, UTCDateTime


class WebhookEvent(Base):
    """Verbatim audit copy of every inbound gateway event; also the idempotency store."""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    gateway = Column(String(32), nullable=False)
    event_type = Column(String(64), nullable=False, index=True)
    external_event_id = Column(String(255), nullable=False)
    raw_payload = Column(JSONType, nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(UTCDateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    received_at = Column(UTCDateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("gateway", "external_event_id", name="uq_webhook_events_gateway_event"),
    )

from typing import Optional

from sqlalchemy.orm import Session

from billsync.models.webhook_event import WebhookEvent


class WebhookEventRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, gateway: str, external_event_id: str) -> Optional[WebhookEvent]:
        return (
            self.db.query(WebhookEvent)
            .filter(
                WebhookEvent.gateway == gateway,
                WebhookEvent.external_event_id == external_event_id,
            )
            .first()
        )

    def get_for_update(self, event_id: int) -> Optional[WebhookEvent]:
        return (
            self.db.query(WebhookEvent)
            .filter(WebhookEvent.id == event_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def create(self, event: WebhookEvent) -> WebhookEvent:
        self.db.add(event)
        self.db.flush()
        return event

"""
Webhook ingestion and idempotency guard.

Delivery is at-least-once, so every event is first written to
``webhook_events`` (unique per gateway and external event id) and committed.
Processing then happens in a second transaction that locks that row, applies
the event, and flips ``processed``. A row already marked processed is a
duplicate and is acknowledged without side effects; a row left unprocessed
by an earlier failure is processed again on redelivery.
"""
import json
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from billsync.core.config import settings
from billsync.core.errors import MalformedWebhookError, SignatureVerificationError, WebhookProcessingError
from billsync.db.session import transaction
from billsync.models.webhook_event import WebhookEvent
from billsync.repositories.webhook_event_repository import WebhookEventRepository
from billsync.schemas.webhook import GatewayEvent, WebhookResult
from billsync.services.event_handlers import EventHandlers
from billsync.services.notification_service import Notification, Notifier, dispatch_notifications
from billsync.services.payment_gateway import PaymentGateway
from billsync.utils.billing_dates import utcnow

logger = logging.getLogger(__name__)


class WebhookService:
    def __init__(self, db, gateway: PaymentGateway, notifier: Notifier):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier
        self.repo = WebhookEventRepository(db)

    def ingest(self, body: bytes, signature: Optional[str] = None, event_id: Optional[str] = None) -> WebhookResult:
        if settings.RAZORPAY_WEBHOOK_SECRET:
            if not self.gateway.verify_webhook_signature(body, signature):
                logger.warning("Webhook rejected: signature mismatch")
                raise SignatureVerificationError("Invalid webhook signature", status_code=401)
        try:
            raw_event = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedWebhookError("Webhook body is not valid JSON") from e
        return self.gateway.process_webhook(raw_event, guard=self, event_id=event_id)

    def _record_receipt(self, event: GatewayEvent) -> WebhookEvent:
        existing = self.repo.get(event.gateway, event.external_event_id)
        if existing is not None:
            return existing
        try:
            record = self.repo.create(WebhookEvent(
                gateway=event.gateway,
                event_type=event.event_type.value,
                external_event_id=event.external_event_id,
                raw_payload=event.raw,
                processed=False,
                attempts=0,
            ))
            self.db.commit()
            return record
        except IntegrityError:
            # A concurrent delivery of the same event won the insert
            self.db.rollback()
            return self.repo.get(event.gateway, event.external_event_id)

    def _record_failure(self, record_id: int, error: Exception) -> None:
        try:
            record = self.repo.get_for_update(record_id)
            if record is not None:
                record.attempts = (record.attempts or 0) + 1
                record.last_error = f"{type(error).__name__}: {error}"[:2000]
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception(f"Could not record failure for webhook event {record_id}")

    def run(self, event: GatewayEvent) -> WebhookResult:
        record = self._record_receipt(event)
        if record.processed:
            logger.info(
                f"Duplicate webhook {event.event_type.value} ignored",
                extra={"external_event_id": event.external_event_id},
            )
            return WebhookResult(processed=True, event_type=event.event_type.value, duplicate=True)

        record_id = record.id
        notifications: List[Notification] = []
        try:
            with transaction(self.db):
                locked = self.repo.get_for_update(record_id)
                if locked.processed:
                    return WebhookResult(processed=True, event_type=event.event_type.value, duplicate=True)
                locked.attempts = (locked.attempts or 0) + 1
                notifications = EventHandlers(self.db, self.gateway).handle(event)
                locked.processed = True
                locked.processed_at = utcnow()
                locked.last_error = None
        except Exception as e:
            logger.exception(
                f"Webhook {event.event_type.value} failed; left unprocessed for redelivery",
                extra={"external_event_id": event.external_event_id},
            )
            self._record_failure(record_id, e)
            raise WebhookProcessingError(f"Failed to process {event.event_type.value}") from e

        logger.info(
            f"Webhook {event.event_type.value} processed",
            extra={"external_event_id": event.external_event_id, "notifications": len(notifications)},
        )
        dispatch_notifications(self.notifier, notifications)
        return WebhookResult(processed=True, event_type=event.event_type.value)

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from billsync.api.v1.dependencies import get_gateway, get_notifier
from billsync.db.session import get_db
from billsync.schemas.webhook import WebhookResult
from billsync.services.notification_service import Notifier
from billsync.services.payment_gateway import PaymentGateway
from billsync.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/razorpay", response_model=WebhookResult)
async def razorpay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Razorpay event sink.

    Answers 2xx only once the event is durably recorded and applied, or is a
    known duplicate, or is an event type we do not handle. Anything else gets a
    non-2xx so Razorpay redelivers.
    """
    body = await request.body()
    logger.info("Razorpay webhook received")
    # Ingest does blocking DB and gateway I/O
    result = await run_in_threadpool(
        WebhookService(db, gateway, notifier).ingest,
        body,
        signature=request.headers.get("X-Razorpay-Signature"),
        event_id=request.headers.get("X-Razorpay-Event-Id"),
    )
    return result

import logging

from billsync.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=2)
def sync_subscription_invoices(self, subscription_id: int):
    """Backfill gateway invoices into the ledger for one subscription."""
    from billsync.core.errors import GatewayError
    from billsync.db.session import SessionLocal
    from billsync.services.invoice_service import InvoiceService
    from billsync.services.payment_gateway import require_gateway

    db = SessionLocal()
    try:
        added = InvoiceService(db).backfill_invoices(subscription_id, require_gateway())
        return {"subscription_id": subscription_id, "added": added}
    except GatewayError as exc:
        logger.warning(f"sync_subscription_invoices: gateway error for subscription {subscription_id}: {exc}")
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()

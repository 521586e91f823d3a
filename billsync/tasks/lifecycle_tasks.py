"""
Periodic lifecycle work driven by Celery beat: the subscription sweep and the
daily transaction currency audit.
"""
import logging
import time

from billsync.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=0, soft_time_limit=540, time_limit=600)
def run_subscription_cycle(self):
    """Renewals, grace entry, grace expiry and due plan changes. Safe to overlap and re-run."""
    from billsync.db.session import SessionLocal
    from billsync.services.lifecycle_service import LifecycleService
    from billsync.services.notification_service import CeleryNotifier

    db = SessionLocal()
    try:
        t0 = time.monotonic()
        counts = LifecycleService(db, CeleryNotifier()).run_cycle()
        logger.info(
            "run_subscription_cycle done",
            extra={**counts, "duration_seconds": round(time.monotonic() - t0, 2)},
        )
        return counts
    finally:
        db.close()


@celery_app.task(bind=True, max_retries=0)
def audit_transactions(self, lookback_hours: int = None):
    from datetime import timedelta

    from billsync.core.config import settings
    from billsync.db.session import SessionLocal
    from billsync.services.reconciliation_service import audit_recent_transactions
    from billsync.utils.billing_dates import utcnow

    hours = lookback_hours or settings.TRANSACTION_AUDIT_LOOKBACK_HOURS
    db = SessionLocal()
    try:
        issues = audit_recent_transactions(db, since=utcnow() - timedelta(hours=hours))
        return {"issues": len(issues), "transaction_ids": [issue.transaction_id for issue in issues]}
    finally:
        db.close()

from celery import Celery
from celery.signals import worker_process_init

from billsync.core.config import settings
from billsync.core.logging import configure_logging

# Initialize Celery app
celery_app = Celery(
    "billsync",
    broker=settings.REDIS_URL or "redis://localhost:6379/0",
    backend=settings.REDIS_URL or "redis://localhost:6379/0"
)

# Celery configurations
celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=600,
    task_soft_time_limit=540,
)

celery_app.conf.beat_schedule = {
    "run-subscription-cycle": {
        "task": "billsync.tasks.lifecycle_tasks.run_subscription_cycle",
        "schedule": float(settings.LIFECYCLE_SWEEP_INTERVAL_SECONDS),
    },
    "audit-transaction-currency": {
        "task": "billsync.tasks.lifecycle_tasks.audit_transactions",
        "schedule": 24 * 60 * 60.0,
    },
}

# Explicitly include task modules so the worker always registers them
celery_app.conf.include = [
    "billsync.tasks.lifecycle_tasks",
    "billsync.tasks.notification_tasks",
    "billsync.tasks.invoice_tasks",
]


@worker_process_init.connect
def _configure_worker_logging(**kwargs):
    configure_logging()

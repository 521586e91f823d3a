import logging

import requests

from billsync.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3, acks_late=True)
def send_notification(self, user_id: int, type: str, payload: dict):
    """POST the notification to the delivery service; retried a few times, then dropped with a log line."""
    from billsync.core.config import settings

    if not settings.NOTIFICATION_WEBHOOK_URL:
        logger.info(f"Notification {type} for user {user_id} not sent: no NOTIFICATION_WEBHOOK_URL")
        return False

    body = {"user_id": user_id, "type": type, "payload": payload}
    try:
        resp = requests.post(
            settings.NOTIFICATION_WEBHOOK_URL,
            json=body,
            timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
        )
        if resp.status_code >= 500:
            raise requests.HTTPError(f"Notification endpoint returned {resp.status_code}")
        if resp.status_code >= 400:
            logger.error(f"Notification {type} for user {user_id} rejected: {resp.status_code}")
            return False
    except requests.RequestException as exc:
        if self.request.retries >= self.max_retries:
            logger.error(f"Notification {type} for user {user_id} dropped after retries: {exc}")
            return False
        logger.warning(f"Notification {type} for user {user_id} failed, retrying: {exc}")
        raise self.retry(exc=exc, countdown=30 * (self.request.retries + 1))

    logger.info("Notification sent", extra={"user_id": user_id, "notification_type": type})
    return True

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = {
    "activated",
    "renewal",
    "grace_period",
    "expiration",
    "cancelled",
    "plan_changed",
    "payment_failed",
}


@dataclass
class Notification:
    user_id: int
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)


class Notifier:
    """Delivery collaborator; the engine only says who and what."""

    def notify(self, user_id: int, type: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class CeleryNotifier(Notifier):
    """Hands the notification to a worker, which POSTs it to NOTIFICATION_WEBHOOK_URL."""

    def notify(self, user_id, type, payload):
        from billsync.tasks.notification_tasks import send_notification

        send_notification.delay(user_id, type, payload)


class LoggingNotifier(Notifier):
    def notify(self, user_id, type, payload):
        logger.info(f"Notification {type} for user {user_id}", extra={"notification": payload})


def dispatch_notifications(notifier: Notifier, notifications: Iterable[Notification]) -> int:
    """Send after commit. A failed send is logged and never undoes the state change."""
    sent = 0
    for item in notifications:
        if item.type not in NOTIFICATION_TYPES:
            logger.warning(f"Unknown notification type {item.type!r} for user {item.user_id}")
            continue
        try:
            notifier.notify(item.user_id, item.type, item.payload)
            sent += 1
        except Exception as e:
            logger.error(
                f"Failed to send {item.type} notification to user {item.user_id}: {e}",
                extra={"user_id": item.user_id, "notification_type": item.type},
            )
    return sent

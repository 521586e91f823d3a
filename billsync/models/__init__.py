# Import all models so Alembic can detect them
from billsync.models.user import User
from billsync.models.plan import BillingCycle, Plan, PlanPrice
from billsync.models.subscription import Subscription, SubscriptionStatus, GATEWAY_NONE
from billsync.models.transaction import Transaction, TransactionStatus
from billsync.models.webhook_event import WebhookEvent
from billsync.models.customer_mapping import CustomerMapping, GatewayPlanMapping

__all__ = [
    "User",
    "BillingCycle",
    "Plan",
    "PlanPrice",
    "Subscription",
    "SubscriptionStatus",
    "GATEWAY_NONE",
    "Transaction",
    "TransactionStatus",
    "WebhookEvent",
    "CustomerMapping",
    "GatewayPlanMapping",
]

import logging
from typing import List, Optional

from billsync.core.errors import SubscriptionNotFoundError
from billsync.db.session import transaction
from billsync.models.transaction import Transaction, TransactionStatus
from billsync.repositories.plan_repository import PlanRepository
from billsync.repositories.subscription_repository import SubscriptionRepository
from billsync.repositories.transaction_repository import TransactionRepository
from billsync.schemas.subscription import InvoiceView, SubscriptionResponse
from billsync.schemas.transaction import TransactionMetadata, TransactionResponse
from billsync.services.payment_gateway import PaymentGateway
from billsync.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)


class InvoiceNotFoundError(SubscriptionNotFoundError):
    code = "invoice_not_found"


class InvoiceService:
    def __init__(self, db):
        self.db = db
        self.transactions = TransactionRepository(db)
        self.subscriptions = SubscriptionRepository(db)

    def list_for_user(self, user_id: int) -> List[Transaction]:
        return self.transactions.list_by_user(user_id)

    def build_invoice_view(self, transaction_id: int, user_id: Optional[int] = None) -> InvoiceView:
        """Transaction, its subscription and the plan snapshot taken when it was recorded."""
        txn = self.transactions.get_by_id(transaction_id)
        if txn is None or (user_id is not None and txn.user_id != user_id):
            raise InvoiceNotFoundError(f"Invoice {transaction_id} not found")
        return InvoiceView(
            transaction=TransactionResponse.model_validate(txn),
            subscription=SubscriptionResponse.from_model(txn.subscription),
            metadata=TransactionMetadata.from_json(txn.meta),
        )

    def backfill_invoices(self, subscription_id: int, gateway: PaymentGateway) -> int:
        """Record paid gateway invoices the webhooks never delivered. Returns how many were added."""
        subscription = self.subscriptions.get_by_id(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        if not subscription.is_paid:
            return 0

        invoices = gateway.fetch_invoices_for_subscription(subscription.gateway_subscription_id)
        reconciler = ReconciliationService(PlanRepository(self.db))
        added = 0
        with transaction(self.db):
            locked = self.subscriptions.get_for_update(subscription.id)
            for index, invoice in enumerate(invoices):
                if not invoice.is_paid or self.transactions.exists(subscription.gateway, invoice.payment_id):
                    continue
                # The first invoice of a subscription is the mandate authentication charge
                reconciled = reconciler.reconcile(
                    locked.user,
                    locked.plan,
                    invoice.amount,
                    invoice.currency,
                    authentication=index == 0,
                )
                metadata = reconciled.metadata
                metadata.extra.update({"invoice_id": invoice.id, "source": "backfill"})
                self.transactions.create(Transaction(
                    user_id=locked.user_id,
                    subscription_id=locked.id,
                    amount=reconciled.amount,
                    currency=reconciled.currency,
                    gateway=locked.gateway,
                    gateway_transaction_id=invoice.payment_id,
                    status=TransactionStatus.COMPLETED,
                    meta=metadata.to_json(),
                ))
                added += 1
        logger.info(
            f"Invoice backfill for subscription {subscription_id}: {added} added of {len(invoices)}",
            extra={"subscription_id": subscription_id},
        )
        return added

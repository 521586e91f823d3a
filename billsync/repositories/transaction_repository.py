from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from billsync.models.transaction import Transaction, TransactionStatus


class TransactionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, transaction_id: int) -> Optional[Transaction]:
        return self.db.query(Transaction).filter(Transaction.id == transaction_id).first()

    def get_by_gateway_id(self, gateway: str, gateway_transaction_id: str) -> Optional[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(
                Transaction.gateway == gateway,
                Transaction.gateway_transaction_id == gateway_transaction_id,
            )
            .first()
        )

    def exists(self, gateway: str, gateway_transaction_id: str) -> bool:
        return self.get_by_gateway_id(gateway, gateway_transaction_id) is not None

    def latest_completed(self, subscription_id: int) -> Optional[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(
                Transaction.subscription_id == subscription_id,
                Transaction.status == TransactionStatus.COMPLETED,
            )
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .first()
        )

    def count_for_subscription(self, subscription_id: int) -> int:
        return self.db.query(Transaction).filter(Transaction.subscription_id == subscription_id).count()

    def list_by_user(self, user_id: int, limit: int = 100) -> List[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
            .all()
        )

    def list_completed_since(self, since: datetime) -> List[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(
                Transaction.status == TransactionStatus.COMPLETED,
                Transaction.created_at >= since,
            )
            .order_by(Transaction.created_at)
            .all()
        )

    def create(self, transaction: Transaction) -> Transaction:
        self.db.add(transaction)
        self.db.flush()
        return transaction

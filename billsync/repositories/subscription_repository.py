from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from billsync.models.subscription import (
    GATEWAY_NONE,
    LIVE_STATUSES,
    Subscription,
    SubscriptionStatus,
)


class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, subscription_id: int) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.id == subscription_id).first()

    def get_for_update(self, subscription_id: int) -> Optional[Subscription]:
        """Row-locks the subscription for the rest of the current transaction."""
        return (
            self.db.query(Subscription)
            .filter(Subscription.id == subscription_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def get_live_by_user(self, user_id: int, for_update: bool = False) -> Optional[Subscription]:
        query = self.db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status.in_(LIVE_STATUSES),
        )
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    def get_latest_by_user(self, user_id: int) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .first()
        )

    def get_by_gateway_ref(self, gateway: str, gateway_subscription_id: str) -> Optional[Subscription]:
        if not gateway_subscription_id:
            return None
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.gateway == gateway,
                Subscription.gateway_subscription_id == gateway_subscription_id,
            )
            .order_by(Subscription.id.desc())
            .first()
        )

    def list_pending_successors(self, user_id: int) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.CREATED,
            )
            .all()
        )

    def create(self, subscription: Subscription) -> Subscription:
        self.db.add(subscription)
        self.db.flush()
        return subscription

    # Range queries used by the lifecycle sweeps; they return ids only, each
    # row is then locked and re-checked in its own transaction.

    def ids_due_for_renewal(self, horizon: datetime) -> List[int]:
        rows = (
            self.db.query(Subscription.id)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.auto_renew.is_(True),
                Subscription.gateway == GATEWAY_NONE,
                Subscription.pending_change_to_plan_id.is_(None),
                Subscription.end_date <= horizon,
            )
            .order_by(Subscription.end_date)
            .all()
        )
        return [row[0] for row in rows]

    def ids_past_end(self, now: datetime, successor_hold_days: int = 0) -> List[int]:
        hold_start = now - timedelta(days=successor_hold_days)
        rows = (
            self.db.query(Subscription.id)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.end_date < now,
                or_(
                    Subscription.pending_change_to_plan_id.is_(None),
                    Subscription.pending_change_effective_date.is_(None),
                    Subscription.pending_change_effective_date <= hold_start,
                ),
            )
            .order_by(Subscription.end_date)
            .all()
        )
        return [row[0] for row in rows]


    def ids_grace_expired(self, now: datetime) -> List[int]:
        rows = (
            self.db.query(Subscription.id)
            .filter(
                Subscription.status == SubscriptionStatus.GRACE_PERIOD,
                Subscription.grace_period_end.isnot(None),
                Subscription.grace_period_end < now,
            )
            .order_by(Subscription.grace_period_end)
            .all()
        )
        return [row[0] for row in rows]

    def ids_with_due_plan_change(self, now: datetime) -> List[int]:
        rows = (
            self.db.query(Subscription.id)
            .filter(
                Subscription.status.in_(LIVE_STATUSES),
                Subscription.pending_change_to_plan_id.isnot(None),
                Subscription.pending_change_effective_date <= now,
            )
            .order_by(Subscription.pending_change_effective_date)
            .all()
        )
        return [row[0] for row in rows]

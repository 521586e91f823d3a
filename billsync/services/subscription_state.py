"""
Subscription state machine.

Every ``plan_*`` function is pure: it looks at a subscription and the facts of
an event and returns the ``Transition`` to apply, without touching the row.
``apply_transition`` performs the mutation; callers hold the row lock.

Statuses::

    CREATED --activate--> ACTIVE <--charge/resume-- GRACE_PERIOD
    ACTIVE --failure past end / pending / halted / paused--> GRACE_PERIOD
    ACTIVE | GRACE_PERIOD --cancel--> CANCELLED
    ACTIVE | GRACE_PERIOD --complete / grace over / superseded--> EXPIRED

EXPIRED and CANCELLED are terminal: no status moves out of them.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from billsync.models.plan import BillingCycle
from billsync.models.subscription import Subscription, SubscriptionStatus
from billsync.utils.billing_dates import add_billing_cycle


@dataclass(frozen=True)
class Transition:
    to_status: Optional[SubscriptionStatus] = None
    changes: Dict[str, Any] = field(default_factory=dict)
    notification: Optional[str] = None
    reason: str = ""

    @property
    def is_noop(self) -> bool:
        return self.to_status is None and not self.changes


NOOP = Transition(reason="noop")


def _to(subscription: Subscription, status: SubscriptionStatus, notification: Optional[str] = None,
        reason: str = "", **changes) -> Transition:
    # Repeated business events (a second pending, halted after pending) leave the row as it is
    if subscription.is_terminal or subscription.status == status:
        return NOOP
    return Transition(to_status=status, changes=changes, notification=notification, reason=reason)


def plan_activation(subscription: Subscription) -> Transition:
    return _to(subscription, SubscriptionStatus.ACTIVE, "activated", "activated", grace_period_end=None)


def next_cycle(subscription: Subscription, cycle: BillingCycle, now: datetime,
               current_start: Optional[datetime] = None):
    start = current_start or subscription.end_date
    end = add_billing_cycle(start, cycle)
    if end <= now:
        # Long-lapsed rows restart from today rather than accruing missed cycles
        start = now
        end = add_billing_cycle(start, cycle)
    return start, end


def plan_charge(subscription: Subscription, cycle: BillingCycle, now: datetime,
                current_start: Optional[datetime] = None) -> Transition:
    if subscription.is_terminal:
        return NOOP
    start, end = next_cycle(subscription, cycle, now, current_start)
    return Transition(
        to_status=SubscriptionStatus.ACTIVE if subscription.status != SubscriptionStatus.ACTIVE else None,
        changes={"start_date": start, "end_date": end, "grace_period_end": None},
        notification="renewal",
        reason="charged",
    )


def plan_grace(subscription: Subscription, now: datetime, days: int, reason: str) -> Transition:
    return _to(
        subscription,
        SubscriptionStatus.GRACE_PERIOD,
        "grace_period",
        reason,
        grace_period_end=now + timedelta(days=days),
    )


def plan_payment_failure(subscription: Subscription, now: datetime, grace_days: int) -> Transition:
    if subscription.status != SubscriptionStatus.ACTIVE or subscription.end_date > now:
        return NOOP
    return plan_grace(subscription, now, grace_days, "payment_failed")


def awaiting_successor(subscription: Subscription, now: datetime, hold_days: int) -> bool:
    """A scheduled paid downgrade keeps the ending row out of grace while its successor activates."""
    effective = subscription.pending_change_effective_date
    return (
        subscription.pending_change_to_plan_id is not None
        and effective is not None
        and now < effective + timedelta(days=hold_days)
    )


def plan_expiry_to_grace(subscription: Subscription, now: datetime, grace_days: int) -> Transition:
    if subscription.status != SubscriptionStatus.ACTIVE or subscription.end_date >= now:
        return NOOP
    if awaiting_successor(subscription, now, grace_days):
        return NOOP
    return plan_grace(subscription, now, grace_days, "period_ended")


def plan_grace_expiry(subscription: Subscription, now: datetime) -> Transition:
    if (
        subscription.status != SubscriptionStatus.GRACE_PERIOD
        or subscription.grace_period_end is None
        or subscription.grace_period_end >= now
    ):
        return NOOP
    return _to(subscription, SubscriptionStatus.EXPIRED, "expiration", "grace_expired", auto_renew=False)


def plan_cancellation(subscription: Subscription, now: datetime) -> Transition:
    return _to(
        subscription,
        SubscriptionStatus.CANCELLED,
        "cancelled",
        "cancelled",
        auto_renew=False,
        cancelled_at=now,
    )


def plan_completion(subscription: Subscription) -> Transition:
    return _to(subscription, SubscriptionStatus.EXPIRED, "expiration", "completed", auto_renew=False)


def plan_period_refresh(subscription: Subscription, current_end: Optional[datetime]) -> Transition:
    if subscription.is_terminal or current_end is None or subscription.end_date == current_end:
        return NOOP
    return Transition(changes={"end_date": current_end}, reason="updated")


def plan_pause(subscription: Subscription) -> Transition:
    # Paused rows wait for resume; no grace deadline
    return _to(subscription, SubscriptionStatus.GRACE_PERIOD, "grace_period", "paused", grace_period_end=None)


def plan_resume(subscription: Subscription, current_end: Optional[datetime]) -> Transition:
    changes = {"grace_period_end": None}
    if current_end is not None:
        changes["end_date"] = current_end
    return _to(subscription, SubscriptionStatus.ACTIVE, "activated", "resumed", **changes)


def plan_renewal(subscription: Subscription, cycle: BillingCycle) -> Transition:
    """Zero-cost renewal run by the scheduler: extend by one cycle from the old end."""
    if subscription.status != SubscriptionStatus.ACTIVE or not subscription.auto_renew:
        return NOOP
    return Transition(
        changes={
            "start_date": subscription.end_date,
            "end_date": add_billing_cycle(subscription.end_date, cycle),
        },
        notification="renewal",
        reason="renewed",
    )


def plan_supersede(subscription: Subscription, now: datetime) -> Transition:
    """The user's previous live row when another one becomes ACTIVE."""
    if not subscription.is_live:
        return NOOP
    if subscription.pending_change_to_plan_id is not None:
        return Transition(
            to_status=SubscriptionStatus.EXPIRED,
            changes={"auto_renew": False},
            reason="plan_changed",
        )
    return Transition(
        to_status=SubscriptionStatus.CANCELLED,
        changes={"auto_renew": False, "cancelled_at": now},
        reason="superseded",
    )


def apply_transition(subscription: Subscription, transition: Transition) -> bool:
    """Mutates the row; returns whether anything changed."""
    if transition.is_noop:
        return False
    for key, value in transition.changes.items():
        setattr(subscription, key, value)
    if transition.to_status is not None:
        subscription.status = transition.to_status
    return True

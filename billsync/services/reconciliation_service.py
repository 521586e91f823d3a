"""
Currency and amount reconciliation for gateway-reported money.

The gateway is not trusted on currency: the user's billing region decides
which currency a transaction is recorded in. When the two disagree the plan's
configured regional price is recorded instead of the reported figure, and the
discrepancy is kept in the transaction metadata for audit.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from billsync.core.config import settings
from billsync.core.errors import PricingNotFoundError
from billsync.models.plan import Plan
from billsync.models.transaction import Transaction, TransactionStatus
from billsync.models.user import User
from billsync.repositories.plan_repository import PlanRepository
from billsync.repositories.transaction_repository import TransactionRepository
from billsync.schemas.transaction import (
    AuthChargeNormalized,
    CurrencyMismatch,
    PlanSnapshot,
    TransactionMetadata,
)
from billsync.services.pricing_service import (
    PricingService,
    currency_for_region,
    region_for_country,
)
from billsync.utils.billing_dates import utcnow
from billsync.utils.money import quantize, within_tolerance

logger = logging.getLogger(__name__)


@dataclass
class ReconciledAmount:
    amount: Decimal
    currency: str
    region: str
    metadata: TransactionMetadata = field(default_factory=TransactionMetadata)

    @property
    def corrected(self) -> bool:
        return bool(self.metadata.annotations)


@dataclass
class AuditIssue:
    transaction_id: int
    user_id: int
    problem: str
    recorded_amount: Decimal
    recorded_currency: str
    expected_currency: str
    expected_amount: Optional[Decimal] = None


class ReconciliationService:
    def __init__(self, plan_repo: PlanRepository):
        self.plan_repo = plan_repo
        self.pricing = PricingService(plan_repo)

    def _snapshot(self, plan: Plan, region: str) -> PlanSnapshot:
        try:
            price = self.pricing.get_price(plan.id, region)
            amount, currency = quantize(price.amount, price.currency), price.currency
        except PricingNotFoundError:
            amount, currency = None, None
        return PlanSnapshot(
            id=plan.id,
            name=plan.name,
            billing_cycle=plan.billing_cycle.value,
            price=amount,
            currency=currency,
        )

    def _matches_any_plan_price(self, amount: Decimal, currency: str) -> Optional[int]:
        for price in self.plan_repo.list_prices_in_currency(currency):
            if within_tolerance(amount, Decimal(price.amount), settings.AUTH_CHARGE_TOLERANCE):
                return price.plan_id
        return None

    def reconcile(
        self,
        user: User,
        plan: Plan,
        reported_amount: Decimal,
        reported_currency: str,
        authentication: bool = False,
    ) -> ReconciledAmount:
        """Decide the amount and currency to record for a gateway-reported charge.

        ``authentication`` marks mandate-authentication charges (``payment.authorized``
        and the first invoice of a subscription), which providers bill at a nominal
        amount; only those are eligible for auth-charge normalization.
        """
        region = region_for_country(user.billing_country)
        expected = currency_for_region(region)
        reported_currency = (reported_currency or "").upper()
        reported_amount = Decimal(reported_amount)
        snapshot = self._snapshot(plan, region)
        metadata = TransactionMetadata(plan=snapshot)

        if reported_currency == expected:
            return ReconciledAmount(quantize(reported_amount, expected), expected, region, metadata)

        logger.warning(
            "Currency mismatch on gateway charge",
            extra={
                "user_id": user.id,
                "plan_id": plan.id,
                "expected_currency": expected,
                "actual_currency": reported_currency,
                "reported_amount": str(reported_amount),
            },
        )

        if authentication:
            matched_plan_id = self._matches_any_plan_price(reported_amount, reported_currency)
            auth_amount = settings.GATEWAY_AUTH_AMOUNTS.get(expected)
            if matched_plan_id is not None and auth_amount is not None:
                normalized = quantize(auth_amount, expected)
                metadata.annotations.append(CurrencyMismatch(
                    expected_currency=expected,
                    actual_currency=reported_currency,
                    reported_amount=reported_amount,
                    recorded_amount=normalized,
                    region=region,
                ))
                metadata.annotations.append(AuthChargeNormalized(
                    reported_amount=reported_amount,
                    reported_currency=reported_currency,
                    matched_plan_id=matched_plan_id,
                    normalized_amount=normalized,
                    normalized_currency=expected,
                ))
                return ReconciledAmount(normalized, expected, region, metadata)

        # Fall back to the configured price for the user's region
        if snapshot.price is not None:
            recorded = quantize(snapshot.price, expected)
        else:
            recorded = quantize(reported_amount, expected)
        metadata.annotations.append(CurrencyMismatch(
            expected_currency=expected,
            actual_currency=reported_currency,
            reported_amount=reported_amount,
            recorded_amount=recorded,
            region=region,
        ))
        return ReconciledAmount(recorded, expected, region, metadata)


def audit_recent_transactions(db, since: Optional[datetime] = None) -> List[AuditIssue]:
    """Read-only sweep: recent COMPLETED transactions recorded in the wrong currency or at an odd amount."""
    since = since or utcnow() - timedelta(hours=settings.TRANSACTION_AUDIT_LOOKBACK_HOURS)
    plan_repo = PlanRepository(db)
    pricing = PricingService(plan_repo)
    issues: List[AuditIssue] = []
    price_cache: Dict[tuple, Optional[Decimal]] = {}

    for txn in TransactionRepository(db).list_completed_since(since):
        subscription = txn.subscription
        user = subscription.user
        region = region_for_country(user.billing_country)
        expected_currency = currency_for_region(region)

        if txn.currency != expected_currency:
            issues.append(AuditIssue(
                transaction_id=txn.id,
                user_id=txn.user_id,
                problem="currency",
                recorded_amount=Decimal(txn.amount),
                recorded_currency=txn.currency,
                expected_currency=expected_currency,
            ))
            continue

        if Decimal(txn.amount) == 0 or _is_adjusted(txn):
            continue

        key = (subscription.plan_id, region)
        if key not in price_cache:
            try:
                price_cache[key] = pricing.price_amount(subscription.plan_id, region)
            except PricingNotFoundError:
                price_cache[key] = None
        expected_amount = price_cache[key]
        if expected_amount is not None and Decimal(txn.amount) > expected_amount:
            issues.append(AuditIssue(
                transaction_id=txn.id,
                user_id=txn.user_id,
                problem="amount",
                recorded_amount=Decimal(txn.amount),
                recorded_currency=txn.currency,
                expected_currency=expected_currency,
                expected_amount=expected_amount,
            ))

    for issue in issues:
        logger.warning(
            f"Transaction audit: {issue.problem} issue on transaction {issue.transaction_id}",
            extra={
                "transaction_id": issue.transaction_id,
                "user_id": issue.user_id,
                "recorded": f"{issue.recorded_amount} {issue.recorded_currency}",
                "expected_currency": issue.expected_currency,
            },
        )
    logger.info(f"Transaction audit since {since.isoformat()}: {len(issues)} issue(s)")
    return issues


def _is_adjusted(txn: Transaction) -> bool:
    # Prorated and normalized charges legitimately differ from the list price
    metadata = TransactionMetadata.from_json(txn.meta)
    return bool(metadata.annotations) or "proration" in metadata.extra or txn.status != TransactionStatus.COMPLETED

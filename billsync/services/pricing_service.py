import logging
from decimal import Decimal
from typing import Dict, List, Optional

from billsync.core.cache import cache_get, cache_set
from billsync.core.config import settings
from billsync.core.errors import PlanNotFoundError, PricingNotFoundError
from billsync.models.plan import Plan, PlanPrice
from billsync.repositories.plan_repository import PlanRepository
from billsync.utils.money import quantize

logger = logging.getLogger(__name__)

CATALOG_CACHE_PREFIX = "billsync:plans:"


def region_for_country(country: Optional[str]) -> str:
    """Users billed from the special-region country get its prices, everyone else GLOBAL."""
    if country and country.strip().upper() == settings.SPECIAL_REGION_COUNTRY.upper():
        return settings.SPECIAL_REGION
    return settings.DEFAULT_REGION


def currency_for_region(region: str) -> str:
    if region == settings.SPECIAL_REGION:
        return settings.SPECIAL_REGION_CURRENCY
    return settings.DEFAULT_CURRENCY


def expected_currency_for_country(country: Optional[str]) -> str:
    return currency_for_region(region_for_country(country))


class PricingService:
    def __init__(self, repo: PlanRepository):
        self.repo = repo

    def get_plan(self, plan_id: int) -> Plan:
        plan = self.repo.get_by_id(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found")
        return plan

    def get_price(self, plan_id: int, region: str) -> PlanPrice:
        """Regional price with GLOBAL fallback; a plan with neither is a data inconsistency."""
        price = self.repo.get_price(plan_id, region)
        if price is None and region != settings.DEFAULT_REGION:
            price = self.repo.get_price(plan_id, settings.DEFAULT_REGION)
        if price is None:
            logger.error(f"No price configured for plan {plan_id} in region {region} or {settings.DEFAULT_REGION}")
            raise PricingNotFoundError(f"No price configured for plan {plan_id} in region {region}")
        return price

    def price_amount(self, plan_id: int, region: str) -> Decimal:
        price = self.get_price(plan_id, region)
        return quantize(price.amount, price.currency)

    def is_zero_cost(self, plan: Plan, region: str) -> bool:
        if plan.is_freemium:
            return True
        price = self.repo.get_price(plan.id, region) or self.repo.get_price(plan.id, settings.DEFAULT_REGION)
        return price is not None and Decimal(price.amount) == 0

    def list_catalog(self, region: str) -> List[Dict]:
        """Active plans priced for ``region``; served from Redis when warm."""
        cache_key = f"{CATALOG_CACHE_PREFIX}{region}"
        cached = cache_get(cache_key)
        if cached is not None:
            return cached

        catalog = []
        for plan in self.repo.list_active():
            prices = {p.target_region: p for p in plan.prices}
            price = prices.get(region) or prices.get(settings.DEFAULT_REGION)
            catalog.append({
                "id": plan.id,
                "name": plan.name,
                "description": plan.description,
                "billing_cycle": plan.billing_cycle.value,
                "is_freemium": plan.is_freemium,
                "region": region,
                "currency": price.currency if price else None,
                "price": str(quantize(price.amount, price.currency)) if price else None,
            })
        cache_set(cache_key, catalog)
        return catalog

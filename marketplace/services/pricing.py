"""Lead pricing in credits and the credit packages sold for money."""

import math
from decimal import Decimal
from typing import Any

from marketplace.core.config import get_settings
from marketplace.core.exceptions import BadRequestError
from marketplace.models.credit_account import CreditAccount
from marketplace.models.service_request import ServiceRequest

URGENCY_SURCHARGE = {"urgent": 4, "high": 2, "medium": 1}
BUDGET_TIERS = ((2000, 8), (1000, 5), (500, 3), (200, 2), (100, 1))

# Prices in minor units (pence), VAT included
CREDIT_PACKAGES: dict[str, dict[str, Any]] = {
    "starter": {
        "credits": 280,
        "price_minor": 39200,
        "original_price_minor": 49000,
        "enough_for_leads": 10,
    },
    "professional": {
        "credits": 560,
        "price_minor": 70000,
        "original_price_minor": 87500,
        "enough_for_leads": 20,
    },
    "business": {
        "credits": 1120,
        "price_minor": 120000,
        "original_price_minor": 150000,
        "enough_for_leads": 40,
    },
}


def get_package(package_id: str) -> dict[str, Any]:
    package = CREDIT_PACKAGES.get(package_id)
    if not package:
        raise BadRequestError(f"Invalid package: {package_id}", details={"package_id": package_id})
    return {"id": package_id, **package}


def list_packages() -> list[dict[str, Any]]:
    out = []
    for package_id, package in CREDIT_PACKAGES.items():
        per_credit = package["price_minor"] / package["credits"] / 100
        out.append({"id": package_id, **package, "price_per_credit": round(per_credit, 2)})
    return out


def suggest_package(credits_needed: int) -> str:
    """Smallest package that covers the shortfall."""
    for package_id, package in CREDIT_PACKAGES.items():
        if package["credits"] >= credits_needed:
            return package_id
    return "business"


def _budget_surcharge(request: ServiceRequest) -> int:
    try:
        amount = float(request.budget.amount or 0)
    except (TypeError, ValueError):
        return 0
    for floor, surcharge in BUDGET_TIERS:
        if amount >= floor:
            return surcharge
    return 0


def _clamp(cost: int) -> int:
    s = get_settings()
    return max(s.lead_min_cost, min(cost, s.lead_max_cost))


def _discount(cost: int, multiplier: float) -> int:
    # Decimal keeps 20 * 0.7 at exactly 14
    return max(1, math.floor(Decimal(cost) * Decimal(str(multiplier))))


def lead_cost(request: ServiceRequest, account: CreditAccount | None) -> int:
    """
    Credits a provider pays to contact this request. Pure and deterministic.
    The raw sum is clamped to [min, max] first so discounts apply to the capped price,
    then clamped again.
    """
    s = get_settings()
    cost = s.lead_base_cost
    cost += _budget_surcharge(request)
    cost += URGENCY_SURCHARGE.get(request.timeline.urgency, 0)
    if (request.category_slug or "").lower() in s.complex_categories:
        cost += 3
    city = request.location.city
    if isinstance(city, str) and city.strip().lower() in s.premium_cities:
        cost += 2
    cost = _clamp(cost)

    leads_contacted = account.stats.leads_contacted if account else 0
    if leads_contacted < s.new_provider_lead_threshold:
        cost = _discount(cost, s.new_provider_multiplier)
    if request.promotional:
        cost = _discount(cost, s.promotional_multiplier)
    return _clamp(cost)


def is_free_lead(cost: int, request: ServiceRequest) -> bool:
    return cost <= get_settings().free_lead_threshold or bool(request.promotional)

"""Request-to-provider relevance scoring (0-100) and deterministic ranking."""

from dataclasses import dataclass
from typing import Any, Callable

from marketplace.core.config import get_settings
from marketplace.core.logging import get_logger
from marketplace.models.service_request import ServiceRequest
from marketplace.models.user import User
from marketplace.services.geo import distance_or_default

log = get_logger(__name__)

URGENCY_ORDER = {"urgent": 4, "high": 3, "medium": 2, "low": 1}
SORT_KEYS = ("match_score", "newest", "urgency", "distance", "credits")


def _safe(component: Callable[..., int], *args: Any) -> int:
    """Malformed profile data costs that one component, never the whole score."""
    try:
        return component(*args)
    except (AttributeError, TypeError, ValueError, ZeroDivisionError):
        log.debug("score_component_skipped", component=component.__name__)
        return 0


def _category_points(request: ServiceRequest, provider: User) -> int:
    return 40 if request.category_id in (provider.categories or []) else 0


def _proximity_points(request: ServiceRequest, provider: User) -> int:
    distance = distance_or_default(request.location.coordinates, provider.location.coordinates)
    if distance <= 10:
        points = 25
    elif distance <= 25:
        points = 20
    elif distance <= 50:
        points = 15
    elif distance <= 100:
        points = 10
    else:
        points = 0
    if provider.is_nationwide:
        points = max(points, 15)
    return points


def _budget_points(request: ServiceRequest, provider: User) -> int:
    budget = request.budget.amount
    min_rate = provider.hourly_rate.min
    if not budget or not min_rate:
        return 10
    hours = request.timeline.estimated_hours or get_settings().default_estimated_hours
    per_hour = float(budget) / float(hours)
    if per_hour >= min_rate:
        return 20
    if per_hour >= min_rate * 0.8:
        return 15
    return 0


def _quality_points(request: ServiceRequest, provider: User) -> int:
    rating = provider.rating
    if rating.count < get_settings().quality_min_rating_count:
        return 0
    if rating.average >= 4.5 and rating.count >= 10:
        return 15
    if rating.average >= 4.0:
        return 10
    if rating.average >= 3.5:
        return 5
    return 0


def _experience_points(request: ServiceRequest, provider: User) -> int:
    years = provider.experience_years or 0
    if years >= 10:
        return 10
    if years >= 5:
        return 7
    if years >= 2:
        return 5
    return 0


def _verification_points(request: ServiceRequest, provider: User) -> int:
    points = 0
    if provider.is_verified:
        points += 5
    if provider.background_check_verified:
        points += 3
    if provider.email_verified:
        points += 2
    return points


def _response_points(request: ServiceRequest, provider: User) -> int:
    hours = provider.response_time_hours
    if hours is None:
        return 0
    if hours <= 2:
        return 5
    if hours <= 6:
        return 3
    if hours <= 24:
        return 1
    return 0


COMPONENTS = (
    _category_points,
    _proximity_points,
    _budget_points,
    _quality_points,
    _experience_points,
    _verification_points,
    _response_points,
)


def match_score(request: ServiceRequest, provider: User) -> int:
    score = sum(_safe(component, request, provider) for component in COMPONENTS)
    return min(100, max(0, score))


def rank_providers(request: ServiceRequest, providers: list[User]) -> list[tuple[User, int]]:
    """Best match first; equal scores ordered by provider id so output is stable."""
    scored = [(provider, match_score(request, provider)) for provider in providers]
    scored.sort(key=lambda item: (-item[1], str(item[0].id)))
    return scored


@dataclass
class LeadView:
    request: ServiceRequest
    match_score: int
    cost: int
    is_free: bool
    distance_km: float | None = None

    @property
    def urgency(self) -> str:
        return self.request.timeline.urgency

    @property
    def first_to_respond(self) -> bool:
        return self.request.quote_count == 0


def _sort_key(sort_by: str) -> Callable[[LeadView], Any]:
    if sort_by == "newest":
        return lambda v: -v.request.created_at.timestamp()
    if sort_by == "urgency":
        return lambda v: -URGENCY_ORDER.get(v.urgency, 0)
    if sort_by == "distance":
        return lambda v: v.distance_km if v.distance_km is not None else float("inf")
    if sort_by == "credits":
        return lambda v: v.cost
    return lambda v: -v.match_score


def rank_leads(entries: list[LeadView], sort_by: str = "match_score") -> list[LeadView]:
    """Sort lead views by the chosen key; ties broken by ascending request id."""
    primary = _sort_key(sort_by)
    return sorted(entries, key=lambda v: (primary(v), str(v.request.id)))

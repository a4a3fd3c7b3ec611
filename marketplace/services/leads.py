"""
Lead contact workflow: a provider pays credits to unlock a customer's request.

Per (provider, request) the flow only moves forward:
not contacted -> checked (read only, repeatable) -> committed (exactly once).
"""

import asyncio
from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from beanie.odm.queries.update import UpdateResponse

from marketplace.core.audit import log_event
from marketplace.core.config import get_settings
from marketplace.core.events import EmailRequested, NotificationRequested, emit
from marketplace.core.exceptions import (
    BadRequestError,
    DuplicateContactError,
    ForbiddenError,
    NotFoundError,
    RequestInactiveError,
)
from marketplace.core.logging import get_logger
from marketplace.core.pagination import paginate
from marketplace.models.credit_account import CreditAccount
from marketplace.models.service_request import ACTIVE_STATUSES, LeadContact, ServiceRequest
from marketplace.models.user import User
from marketplace.services import credits as credits_service
from marketplace.services.geo import haversine_distance_km
from marketplace.services.pricing import is_free_lead, lead_cost, suggest_package
from marketplace.services.scoring import SORT_KEYS, LeadView, match_score, rank_leads, rank_providers

log = get_logger(__name__)

LEAD_TYPES = ("all", "free", "paid")
PROVIDER_TYPES = ("service_provider", "both")


def contact_key(request_id: PydanticObjectId, provider_id: PydanticObjectId) -> str:
    return f"lead_contact:{request_id}:{provider_id}"


async def _load_contactable(request_id: PydanticObjectId, provider_id: PydanticObjectId) -> tuple[ServiceRequest, User]:
    request = await ServiceRequest.get(request_id)
    if not request:
        raise NotFoundError("Lead not found")
    provider = await User.get(provider_id)
    if not provider:
        raise NotFoundError("Provider not found")
    if request.customer_id == provider.id:
        raise BadRequestError("You cannot contact your own request")
    if not request.is_active():
        raise RequestInactiveError()
    if request.was_contacted_by(provider.id):
        raise DuplicateContactError()
    return request, provider


def _price(request: ServiceRequest, account: CreditAccount | None) -> tuple[int, bool, int]:
    """(lead cost, free flag, credits actually charged)."""
    cost = lead_cost(request, account)
    free = is_free_lead(cost, request)
    return cost, free, 0 if free else cost


async def check_contact(request_id: PydanticObjectId, provider_id: PydanticObjectId) -> dict[str, Any]:
    """Price the lead and report whether the provider can afford it. Mutates nothing."""
    request, provider = await _load_contactable(request_id, provider_id)
    account = await credits_service.get_account(provider.id)
    cost, free, charge = _price(request, account)
    balance = account.balance if account else 0
    can_afford = balance >= charge
    shortfall = max(0, charge - balance)
    return {
        "request_id": str(request.id),
        "lead_cost": cost,
        "credits_required": charge,
        "is_free": free,
        "current_balance": balance,
        "can_afford": can_afford,
        "shortfall": shortfall,
        "suggested_package": None if can_afford else suggest_package(shortfall),
    }


async def commit_contact(
    request_id: PydanticObjectId,
    provider_id: PydanticObjectId,
    message: str | None = None,
) -> dict[str, Any]:
    """
    Charge the provider and record the contact. At most one contact per provider and
    request: the debit is keyed per pair and the request update is guarded on the
    provider not being in contacted_provider_ids. If recording the contact fails the
    debit is refunded and its key released before the error propagates. The charge and
    the contact write run shielded, so a cancelled caller still leaves both or neither.
    """
    message = (message or "").strip()
    if len(message) > get_settings().max_contact_message_length:
        raise BadRequestError("Message is too long")

    request, provider = await _load_contactable(request_id, provider_id)
    account = await credits_service.get_account(provider.id)
    cost, free, charge = _price(request, account)

    result, updated = await asyncio.shield(_charge_and_record(request, provider, cost, free, charge, message))
    log.info(
        "lead_contacted",
        request_id=str(request.id),
        provider_id=str(provider.id),
        credits_charged=charge,
        is_free=free,
        balance=result.balance,
    )

    customer = await User.get(updated.customer_id)
    await emit(
        NotificationRequested(
            account_id=str(updated.customer_id),
            type="lead_contacted",
            payload={
                "request_id": str(updated.id),
                "request_title": updated.title,
                "provider_id": str(provider.id),
                "provider_name": provider.display_name,
                "message": message,
            },
        )
    )
    await emit(
        EmailRequested(
            template="lead_contact_confirmation",
            to=provider.email,
            data={
                "provider_name": provider.display_name,
                "request_title": updated.title,
                "credits_charged": charge,
                "balance": result.balance,
            },
        )
    )
    await log_event(
        str(provider.id),
        "lead_contacted",
        "service_request",
        str(updated.id),
        {"credits_charged": charge, "lead_cost": cost, "is_free": free},
    )
    return {
        "request_id": str(updated.id),
        "credits_charged": charge,
        "is_free": free,
        "balance": result.balance,
        "ledger_entry_id": str(result.entry.id),
        "customer": {
            "id": str(updated.customer_id),
            "name": customer.full_name if customer else None,
            "email": customer.email if customer else None,
            "phone": customer.phone if customer else None,
        },
    }


async def _charge_and_record(
    request: ServiceRequest,
    provider: User,
    cost: int,
    free: bool,
    charge: int,
    message: str,
) -> tuple[credits_service.LedgerResult, ServiceRequest]:
    result = await credits_service.debit(
        provider.id,
        charge,
        reason="lead_contact",
        idempotency_key=contact_key(request.id, provider.id),
        related_lead_id=request.id,
        metadata={"lead_cost": cost, "is_free": free},
    )
    if result.replayed:
        raise DuplicateContactError()

    try:
        updated = await _record_contact(request, provider.id, charge, message, result.entry.id)
    except BaseException:
        if charge:
            await credits_service.refund(
                provider.id,
                charge,
                reason="lead_contact_reversed",
                related_lead_id=request.id,
                metadata={"ledger_entry_id": str(result.entry.id)},
            )
        await credits_service.release_idempotency_key(result.entry.id)
        log.warning("lead_contact_reversed", request_id=str(request.id), provider_id=str(provider.id), credits=charge)
        raise

    await credits_service.bump_stats(provider.id, leads_contacted=1, credits_spent=charge)
    return result, updated


async def _record_contact(
    request: ServiceRequest,
    provider_id: PydanticObjectId,
    charge: int,
    message: str,
    ledger_entry_id: PydanticObjectId,
) -> ServiceRequest:
    contact = LeadContact(
        provider_id=provider_id,
        credits_charged=charge,
        message=message,
        ledger_entry_id=ledger_entry_id,
    )
    updated = await ServiceRequest.find_one(
        {
            "_id": request.id,
            "contacted_provider_ids": {"$ne": provider_id},
            "status": {"$in": list(ACTIVE_STATUSES)},
            "expires_at": {"$gt": datetime.utcnow()},
        }
    ).update(
        {
            "$addToSet": {"contacted_provider_ids": provider_id},
            "$push": {"contacts": contact.model_dump()},
            "$inc": {"quote_count": 1},
        },
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is None:
        current = await ServiceRequest.get(request.id)
        if current and current.was_contacted_by(provider_id):
            raise DuplicateContactError()
        raise RequestInactiveError()
    if updated.status == "published":
        moved = await ServiceRequest.find_one({"_id": request.id, "status": "published"}).update(
            {"$set": {"status": "receiving_quotes"}},
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        updated = moved or updated
    return updated


def _lead_dict(view: LeadView) -> dict[str, Any]:
    r = view.request
    return {
        "id": str(r.id),
        "title": r.title,
        "description": r.description,
        "category": {"id": str(r.category_id), "slug": r.category_slug, "name": r.category_name},
        "location": {"city": r.location.city, "region": r.location.region},
        "distance_km": round(view.distance_km, 1) if view.distance_km is not None else None,
        "budget": r.budget.model_dump(),
        "urgency": view.urgency,
        "posted_at": r.created_at.isoformat(),
        "expires_at": r.expires_at.isoformat(),
        "quote_count": r.quote_count,
        "lead": {
            "match_score": view.match_score,
            "cost": view.cost,
            "credits_required": 0 if view.is_free else view.cost,
            "is_free": view.is_free,
        },
        "flags": {
            "urgent": view.urgency == "urgent",
            "first_to_respond": view.first_to_respond,
            "promotional": r.promotional,
        },
    }


def _lead_stats(views: list[LeadView]) -> dict[str, Any]:
    total = len(views)
    return {
        "total": total,
        "free": sum(1 for v in views if v.is_free),
        "paid": sum(1 for v in views if not v.is_free),
        "urgent": sum(1 for v in views if v.urgency == "urgent"),
        "first_to_respond": sum(1 for v in views if v.first_to_respond),
        "average_match_score": round(sum(v.match_score for v in views) / total) if total else 0,
        "total_credits_required": sum(0 if v.is_free else v.cost for v in views),
    }


async def list_leads(
    provider_id: PydanticObjectId,
    category_id: PydanticObjectId | None = None,
    urgency: str | None = None,
    min_budget: float | None = None,
    max_budget: float | None = None,
    lead_type: str = "all",
    sort_by: str = "match_score",
    limit: int = 20,
    offset: int = 0,
) -> dict[str, Any]:
    """
    Ranked leads for a provider: active requests in their categories they have not
    contacted yet, excluding customers they blocked.
    """
    if lead_type not in LEAD_TYPES:
        raise BadRequestError(f"Invalid lead type: {lead_type}")
    if sort_by not in SORT_KEYS:
        raise BadRequestError(f"Invalid sort: {sort_by}")
    provider = await User.get(provider_id)
    if not provider:
        raise NotFoundError("Provider not found")
    limit, offset = paginate(limit, offset)

    categories = [category_id] if category_id else list(provider.categories)
    query: dict[str, Any] = {
        "status": {"$in": list(ACTIVE_STATUSES)},
        "expires_at": {"$gt": datetime.utcnow()},
        "category_id": {"$in": categories},
        "contacted_provider_ids": {"$ne": provider.id},
        "customer_id": {"$nin": [provider.id, *provider.blocked_customers]},
    }
    if urgency:
        query["timeline.urgency"] = urgency
    budget: dict[str, float] = {}
    if min_budget is not None:
        budget["$gte"] = min_budget
    if max_budget is not None:
        budget["$lte"] = max_budget
    if budget:
        query["budget.amount"] = budget

    requests = (
        await ServiceRequest.find(query)
        .sort(-ServiceRequest.created_at)
        .limit(get_settings().lead_scan_limit)
        .to_list()
    )
    account = await credits_service.get_account(provider.id)
    views = []
    for request in requests:
        cost, free, _ = _price(request, account)
        if lead_type == "free" and not free:
            continue
        if lead_type == "paid" and free:
            continue
        views.append(
            LeadView(
                request=request,
                match_score=match_score(request, provider),
                cost=cost,
                is_free=free,
                distance_km=haversine_distance_km(request.location.coordinates, provider.location.coordinates),
            )
        )
    ranked = rank_leads(views, sort_by)
    page = ranked[offset:offset + limit]
    return {
        "leads": [_lead_dict(v) for v in page],
        "stats": _lead_stats(ranked),
        "limit": limit,
        "offset": offset,
        "total": len(ranked),
        "current_balance": account.balance if account else 0,
    }


async def match_providers(
    request_id: PydanticObjectId,
    customer_id: PydanticObjectId,
    limit: int = 20,
) -> list[dict[str, Any]]:
    """Providers in the request's category ranked by match score, for the owning customer."""
    request = await ServiceRequest.get(request_id)
    if not request:
        raise NotFoundError("Request not found")
    if request.customer_id != customer_id:
        raise ForbiddenError("Not your request")
    limit, _ = paginate(limit, 0)
    providers = await User.find(
        {
            "user_type": {"$in": list(PROVIDER_TYPES)},
            "is_active": True,
            "categories": request.category_id,
            "blocked_customers": {"$ne": customer_id},
            "_id": {"$ne": customer_id},
        }
    ).limit(get_settings().lead_scan_limit).to_list()
    ranked = rank_providers(request, providers)[:limit]
    return [
        {
            "provider_id": str(provider.id),
            "name": provider.display_name,
            "match_score": score,
            "rating": provider.rating.model_dump(),
            "distance_km": haversine_distance_km(request.location.coordinates, provider.location.coordinates),
            "is_verified": provider.is_verified,
            "already_contacted": request.was_contacted_by(provider.id),
        }
        for provider, score in ranked
    ]

from typing import Literal

from beanie import PydanticObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from marketplace.deps import get_current_user, require_provider
from marketplace.models.user import User
from marketplace.services import leads as leads_service

router = APIRouter()


class ContactLeadRequest(BaseModel):
    message: str | None = Field(default=None, max_length=1000)


@router.get("")
async def list_leads(
    user: User = Depends(require_provider),
    category: PydanticObjectId | None = None,
    urgency: Literal["low", "medium", "high", "urgent"] | None = None,
    min_budget: float | None = Query(None, ge=0),
    max_budget: float | None = Query(None, ge=0),
    lead_type: Literal["all", "free", "paid"] = "all",
    sort_by: Literal["match_score", "newest", "urgency", "distance", "credits"] = "match_score",
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Leads matching the provider's categories, ranked."""
    return await leads_service.list_leads(
        user.id,
        category_id=category,
        urgency=urgency,
        min_budget=min_budget,
        max_budget=max_budget,
        lead_type=lead_type,
        sort_by=sort_by,
        limit=limit,
        offset=offset,
    )


@router.get("/{request_id}/contact")
async def check_contact(request_id: PydanticObjectId, user: User = Depends(require_provider)):
    """Price a lead and report affordability. Read only."""
    return await leads_service.check_contact(request_id, user.id)


@router.post("/{request_id}/contact")
async def commit_contact(
    request_id: PydanticObjectId,
    body: ContactLeadRequest | None = None,
    user: User = Depends(require_provider),
):
    """Spend credits to unlock the customer's contact details."""
    return await leads_service.commit_contact(request_id, user.id, body.message if body else None)


@router.get("/{request_id}/providers")
async def request_providers(
    request_id: PydanticObjectId,
    user: User = Depends(get_current_user),
    limit: int = Query(20, ge=1, le=100),
):
    """Providers ranked for one of the current customer's requests."""
    providers = await leads_service.match_providers(request_id, user.id, limit=limit)
    return {"providers": providers}

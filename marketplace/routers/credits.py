from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from marketplace.deps import require_provider
from marketplace.models.user import User
from marketplace.services import credits as credits_service
from marketplace.services.auto_topup import update_auto_top_up
from marketplace.services.pricing import list_packages

router = APIRouter()


class AutoTopUpSettings(BaseModel):
    enabled: bool | None = None
    threshold: int | None = Field(default=None, ge=0, le=1000)
    package_id: Literal["starter", "professional", "business"] | None = None
    payment_method_ref: str | None = None
    gateway_customer_id: str | None = None


def _auto_top_up_out(account) -> dict:
    cfg = account.auto_top_up
    return {
        "enabled": cfg.enabled,
        "threshold": cfg.threshold,
        "package_id": cfg.package_id,
        "has_payment_method": bool(cfg.payment_method_ref),
    }


@router.get("/balance")
async def credits_balance(user: User = Depends(require_provider)):
    """Return current credit balance."""
    account = await credits_service.ensure_account(user.id)
    return {
        "balance": account.balance,
        "low_credits": account.has_low_credits,
        "auto_top_up": _auto_top_up_out(account),
    }


@router.get("/ledger")
async def credits_ledger(
    user: User = Depends(require_provider),
    kind: Literal["purchase", "spend", "refund", "bonus", "adjustment"] | None = None,
    status: Literal["pending", "processing", "completed", "failed", "cancelled"] | None = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current user (newest first)."""
    page = await credits_service.list_entries(user.id, kind=kind, status=status, limit=limit, offset=offset)
    out = [
        {
            "id": str(e.id),
            "kind": e.kind,
            "amount": e.amount,
            "status": e.status,
            "balance_after": e.balance_after,
            "description": e.description,
            "purpose": e.purpose,
            "related_lead_id": str(e.related_lead_id) if e.related_lead_id else None,
            "created_at": e.created_at.isoformat(),
        }
        for e in page.items
    ]
    return {"entries": out, "limit": page.limit, "offset": page.offset, "total": page.total, "has_more": page.has_more}


@router.get("/summary")
async def credits_summary(
    user: User = Depends(require_provider),
    days: int = Query(30, ge=1, le=365),
):
    return await credits_service.summarize(user.id, days=days)


@router.get("/packages")
async def credit_packages():
    return {"packages": list_packages()}


@router.put("/auto-top-up")
async def set_auto_top_up(body: AutoTopUpSettings, user: User = Depends(require_provider)):
    account = await update_auto_top_up(user.id, **body.model_dump())
    return {"auto_top_up": _auto_top_up_out(account)}

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel

from marketplace.deps import get_payment_gateway, require_provider
from marketplace.models.user import User
from marketplace.services import payments as payments_service
from marketplace.services.gateway import PaymentGateway

router = APIRouter()


class CheckoutRequest(BaseModel):
    package_id: str
    lead_id: str | None = None  # unlock this lead once the payment clears


@router.post("/checkout")
async def create_checkout(
    body: CheckoutRequest,
    user: User = Depends(require_provider),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Create a Razorpay order for a credit package; credits land when the webhook confirms it."""
    return await payments_service.start_credit_purchase(user.id, body.package_id, gateway, lead_id=body.lead_id)


@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str = Header(..., alias="X-Razorpay-Signature"),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Razorpay webhook: payment.captured / payment.failed, applied idempotently."""
    body = await request.body()
    result = await payments_service.handle_webhook(body, x_razorpay_signature, gateway)
    if result is None:
        return {"status": "ignored"}
    return {"status": "ok", "replayed": result.replayed}

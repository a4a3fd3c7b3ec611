"""
Payment processor contract and the Razorpay implementation.

Events coming back from the processor are parsed into a discriminated union
(PaymentSucceeded | PaymentFailed on `kind`) whose metadata is discriminated on
`purpose`. The external_ref of every event is our own payment reference, sent to
Razorpay in the order receipt and notes. Razorpay does not copy order notes onto
the payment, so an event without usable notes keeps only its gateway_order_id and
is matched to the pending ledger entry that recorded that order.
"""

import asyncio
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated, Any, Literal, Protocol, Union

import orjson
import razorpay
import requests
from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from razorpay.errors import BadRequestError as RazorpayBadRequestError
from razorpay.errors import GatewayError, ServerError

from marketplace.core.config import get_settings
from marketplace.core.exceptions import BadRequestError, PaymentGatewayError
from marketplace.core.logging import get_logger
from marketplace.core.security import verify_webhook_signature as verify_hmac

log = get_logger(__name__)


class CreditPurchaseMetadata(BaseModel):
    purpose: Literal["credit_purchase"] = "credit_purchase"
    account_id: str
    credits: int = Field(gt=0)
    package_id: str | None = None
    lead_id: str | None = None


class AutoTopUpMetadata(BaseModel):
    purpose: Literal["auto_topup"] = "auto_topup"
    account_id: str
    credits: int = Field(gt=0)
    package_id: str


PaymentMetadata = Annotated[Union[CreditPurchaseMetadata, AutoTopUpMetadata], Field(discriminator="purpose")]


class PaymentSucceeded(BaseModel):
    kind: Literal["succeeded"] = "succeeded"
    external_ref: str
    gateway_payment_id: str | None = None
    gateway_order_id: str | None = None
    amount_minor: int = 0
    currency: str = "GBP"
    metadata: PaymentMetadata | None = None  # None until resolved from the pending ledger entry


class PaymentFailed(BaseModel):
    kind: Literal["failed"] = "failed"
    external_ref: str
    gateway_payment_id: str | None = None
    gateway_order_id: str | None = None
    reason: str = "Payment failed"
    amount_minor: int = 0
    currency: str = "GBP"
    metadata: PaymentMetadata | None = None  # None until resolved from the pending ledger entry


PaymentEvent = Annotated[Union[PaymentSucceeded, PaymentFailed], Field(discriminator="kind")]
payment_event_adapter: TypeAdapter = TypeAdapter(PaymentEvent)
payment_metadata_adapter: TypeAdapter = TypeAdapter(PaymentMetadata)


@dataclass
class ChargeReceipt:
    external_ref: str
    status: Literal["succeeded", "failed", "pending"]
    gateway_payment_id: str | None = None
    failure_reason: str | None = None


class PaymentGateway(Protocol):
    async def charge(
        self,
        account_id: str,
        payment_method_ref: str,
        amount_minor_units: int,
        metadata: dict[str, Any],
    ) -> ChargeReceipt:
        """Off-session charge of a stored payment method. metadata["reference"] is our ref."""
        ...

    def verify_webhook_signature(self, payload: bytes, signature: str) -> PaymentSucceeded | PaymentFailed | None:
        """Parsed event, None for event types we do not handle. Raises on a bad signature."""
        ...

    async def create_checkout(self, amount_minor_units: int, metadata: dict[str, Any]) -> dict[str, Any]:
        ...


def _notes(metadata: dict[str, Any]) -> dict[str, str]:
    """Razorpay notes only hold strings."""
    return {k: str(v) for k, v in metadata.items() if v is not None}


def classify_error(exc: Exception) -> PaymentGatewayError:
    """Map a Razorpay/transport exception onto PaymentGatewayError(permanent=...)."""
    if isinstance(exc, PaymentGatewayError):
        return exc
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return PaymentGatewayError(f"Payment gateway unreachable: {exc}", permanent=False)
    # Razorpay raises BadRequestError for declines, bad tokens and invalid input; retrying cannot help
    if isinstance(exc, RazorpayBadRequestError):
        return PaymentGatewayError(str(exc) or "Payment rejected", permanent=True, gateway_code="BAD_REQUEST_ERROR")
    if isinstance(exc, (ServerError, GatewayError)):
        return PaymentGatewayError(str(exc) or "Payment gateway error", permanent=False, gateway_code=type(exc).__name__)
    return PaymentGatewayError(str(exc) or "Payment gateway error", permanent=False)


class RazorpayGateway:
    """Razorpay recurring-token charges and webhooks. The SDK is synchronous, so calls run in a thread."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        currency: str = "GBP",
        client: Any = None,
    ):
        self.key_id = key_id
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.client = client or razorpay.Client(auth=(key_id, key_secret))

    async def _call(self, fn, *args: Any) -> dict[str, Any]:
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as exc:
            err = classify_error(exc)
            log.warning("razorpay_call_failed", permanent=err.permanent, gateway_code=err.gateway_code, reason=err.message)
            raise err from exc

    async def _create_order(self, amount_minor_units: int, metadata: dict[str, Any]) -> dict[str, Any]:
        return await self._call(
            self.client.order.create,
            {
                "amount": amount_minor_units,
                "currency": self.currency,
                "receipt": metadata.get("reference"),
                "notes": _notes(metadata),
                "payment_capture": 1,
            },
        )

    async def create_checkout(self, amount_minor_units: int, metadata: dict[str, Any]) -> dict[str, Any]:
        order = await self._create_order(amount_minor_units, metadata)
        return {
            "order_id": order["id"],
            "amount": order["amount"],
            "currency": order["currency"],
            "key_id": self.key_id,
        }

    async def charge(
        self,
        account_id: str,
        payment_method_ref: str,
        amount_minor_units: int,
        metadata: dict[str, Any],
    ) -> ChargeReceipt:
        reference = metadata["reference"]
        order = await self._create_order(amount_minor_units, metadata)
        payment = await self._call(
            self.client.payment.createRecurring,
            {
                "amount": amount_minor_units,
                "currency": self.currency,
                "order_id": order["id"],
                "customer_id": metadata.get("gateway_customer_id"),
                "token": payment_method_ref,
                "email": metadata.get("email"),
                "contact": metadata.get("contact"),
                "recurring": "1",
                "notes": _notes(metadata),
            },
        )
        payment_id = payment.get("razorpay_payment_id") or payment.get("id")
        status = payment.get("status")
        # createRecurring normally settles asynchronously via payment.captured / payment.failed
        if status == "captured":
            return ChargeReceipt(external_ref=reference, status="succeeded", gateway_payment_id=payment_id)
        if status == "failed":
            return ChargeReceipt(
                external_ref=reference,
                status="failed",
                gateway_payment_id=payment_id,
                failure_reason=payment.get("error_description") or "Payment failed",
            )
        return ChargeReceipt(external_ref=reference, status="pending", gateway_payment_id=payment_id)

    def verify_webhook_signature(self, payload: bytes, signature: str) -> PaymentSucceeded | PaymentFailed | None:
        if not self.webhook_secret:
            raise BadRequestError("Webhook secret not configured")
        if not verify_hmac(payload, signature, self.webhook_secret):
            raise BadRequestError("Invalid webhook signature")
        return parse_razorpay_event(orjson.loads(payload))


def parse_razorpay_event(data: dict[str, Any]) -> PaymentSucceeded | PaymentFailed | None:
    """Map a verified Razorpay webhook body onto a PaymentEvent; None when it is not ours."""
    event = data.get("event")
    if event not in ("payment.captured", "payment.failed"):
        return None
    payment = data.get("payload", {}).get("payment", {}).get("entity", {})
    order_id = payment.get("order_id")
    notes = payment.get("notes") or {}
    if isinstance(notes, list):  # Razorpay sends [] for empty notes
        notes = {}
    metadata = None
    if notes:
        try:
            metadata = payment_metadata_adapter.validate_python(notes)
        except ValidationError:
            log.warning("webhook_invalid_notes", webhook_event=event, payment_id=payment.get("id"))
    if metadata is None and not order_id:
        log.warning("webhook_unknown_payment", webhook_event=event, payment_id=payment.get("id"))
        return None
    external_ref = notes.get("reference") or order_id
    if not external_ref:
        return None
    common = {
        "external_ref": external_ref,
        "gateway_payment_id": payment.get("id"),
        "gateway_order_id": order_id,
        "amount_minor": payment.get("amount") or 0,
        "currency": payment.get("currency") or "GBP",
        "metadata": metadata,
    }
    if event == "payment.captured":
        return PaymentSucceeded(**common)
    return PaymentFailed(reason=payment.get("error_description") or "Payment failed", **common)


@lru_cache
def get_gateway() -> RazorpayGateway:
    s = get_settings()
    if not s.razorpay_key_id or not s.razorpay_key_secret:
        raise BadRequestError("Payments not configured")
    return RazorpayGateway(
        key_id=s.razorpay_key_id,
        key_secret=s.razorpay_key_secret,
        webhook_secret=s.razorpay_webhook_secret,
        currency=s.payment_currency,
    )

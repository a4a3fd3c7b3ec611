"""Payment reconciliation: apply processor events to the ledger exactly once."""

from uuid import uuid4

from beanie import PydanticObjectId

from marketplace.core.audit import log_event
from marketplace.core.config import get_settings
from marketplace.core.events import EmailRequested, NotificationRequested, emit
from marketplace.core.exceptions import PaymentGatewayError
from marketplace.core.logging import get_logger
from marketplace.models.user import User
from marketplace.services import credits as credits_service
from marketplace.services.credits import LedgerResult
from marketplace.services.gateway import (
    CreditPurchaseMetadata,
    PaymentFailed,
    PaymentGateway,
    PaymentSucceeded,
    payment_metadata_adapter,
)
from marketplace.services.pricing import get_package

log = get_logger(__name__)


async def reconcile_payment_event(event: PaymentSucceeded | PaymentFailed) -> LedgerResult | None:
    """
    Apply one processor event. Duplicates and out-of-order deliveries are settled by
    external_ref alone: a completed credit is never reverted, and a success arriving
    after a failure still completes the entry. Returns None for a payment that matches
    neither usable notes nor a recorded checkout order.
    """
    resolved = await _resolve_event(event)
    if resolved is None:
        log.warning("payment_unmatched", external_ref=event.external_ref, gateway_order_id=event.gateway_order_id)
        return None
    account_id = PydanticObjectId(resolved.metadata.account_id)
    if isinstance(resolved, PaymentSucceeded):
        return await _apply_success(resolved, account_id)
    return await _apply_failure(resolved, account_id)


async def _resolve_event(event: PaymentSucceeded | PaymentFailed) -> PaymentSucceeded | PaymentFailed | None:
    """Match the event to the pending entry recorded for its checkout order, if any."""
    entry = None
    if event.gateway_order_id:
        entry = await credits_service.find_by_gateway_order_id(event.gateway_order_id)
    if entry is None:
        return event if event.metadata is not None else None
    updates: dict = {"external_ref": entry.external_payment_ref}
    if event.metadata is None:
        updates["metadata"] = payment_metadata_adapter.validate_python(
            {
                "purpose": entry.purpose,
                "account_id": str(entry.account_id),
                "credits": entry.amount,
                "package_id": entry.package_id,
                "lead_id": entry.metadata.get("lead_id"),
            }
        )
    return event.model_copy(update=updates)


async def _apply_success(event: PaymentSucceeded, account_id: PydanticObjectId) -> LedgerResult:
    meta = event.metadata
    result = await credits_service.credit(
        account_id,
        meta.credits,
        reason=meta.purpose,
        external_payment_ref=event.external_ref,
        purpose=meta.purpose,
        package_id=meta.package_id,
        cost_minor=event.amount_minor,
        currency=event.currency,
        gateway_payment_id=event.gateway_payment_id,
    )
    if result.replayed:
        log.info("payment_already_applied", account_id=str(account_id), external_ref=event.external_ref)
        return result

    await credits_service.bump_stats(
        account_id,
        total_credits_purchased=meta.credits,
        total_spent_minor=event.amount_minor,
    )
    await log_event(
        str(account_id),
        "payment_succeeded",
        "payment",
        event.external_ref,
        {
            "purpose": meta.purpose,
            "credits": meta.credits,
            "amount_minor": event.amount_minor,
            "currency": event.currency,
            "gateway_payment_id": event.gateway_payment_id,
        },
    )
    if meta.purpose == "auto_topup":
        log.info("auto_topup_succeeded", account_id=str(account_id), credits=meta.credits, balance=result.balance)
        return result

    await emit(
        NotificationRequested(
            account_id=str(account_id),
            type="credits_purchased",
            payload={"credits": meta.credits, "package_id": meta.package_id, "balance": result.balance},
        )
    )
    if meta.lead_id:
        await _contact_after_purchase(account_id, meta)
    return result


async def _contact_after_purchase(account_id: PydanticObjectId, meta: CreditPurchaseMetadata) -> None:
    """Purchase started from a lead: unlock it now. The payment stands whatever happens here."""
    from marketplace.services.leads import commit_contact

    try:
        await commit_contact(PydanticObjectId(meta.lead_id), account_id)
    except Exception as exc:
        log.warning("post_purchase_contact_failed", account_id=str(account_id), lead_id=meta.lead_id, reason=str(exc))


async def _apply_failure(event: PaymentFailed, account_id: PydanticObjectId) -> LedgerResult | None:
    meta = event.metadata
    result = await credits_service.mark_failed(
        event.external_ref,
        event.reason,
        account_id=account_id,
        amount=meta.credits,
        purpose=meta.purpose,
        package_id=meta.package_id,
    )
    if result and result.entry.status == "completed":
        return result
    log.info("payment_failed", account_id=str(account_id), external_ref=event.external_ref, purpose=meta.purpose, reason=event.reason)
    if meta.purpose == "auto_topup":
        await _disable_auto_top_up(account_id, event)
    return result


async def _disable_auto_top_up(account_id: PydanticObjectId, event: PaymentFailed) -> None:
    if not await credits_service.disable_auto_top_up(account_id):
        return
    await log_event(
        str(account_id),
        "auto_topup_disabled",
        "credit_account",
        str(account_id),
        {"external_ref": event.external_ref, "reason": event.reason},
        severity="warning",
    )
    await emit(
        NotificationRequested(
            account_id=str(account_id),
            type="auto_topup_disabled",
            payload={"reason": event.reason, "external_ref": event.external_ref},
        )
    )
    user = await User.get(account_id)
    if user:
        await emit(
            EmailRequested(
                template="auto_topup_failed",
                to=user.email,
                data={"name": user.display_name, "reason": event.reason},
            )
        )


async def handle_webhook(
    payload: bytes,
    signature: str,
    gateway: PaymentGateway,
) -> LedgerResult | None:
    """Verify signature and reconcile; unrelated event types are ignored."""
    event = gateway.verify_webhook_signature(payload, signature)
    if event is None:
        log.info("webhook_ignored")
        return None
    return await reconcile_payment_event(event)


async def start_credit_purchase(
    account_id: PydanticObjectId,
    package_id: str,
    gateway: PaymentGateway,
    lead_id: str | None = None,
) -> dict:
    """Create a checkout for a package and a pending ledger entry awaiting the webhook."""
    package = get_package(package_id)
    currency = get_settings().payment_currency
    reference = f"cp_{uuid4().hex}"
    metadata = CreditPurchaseMetadata(
        account_id=str(account_id),
        credits=package["credits"],
        package_id=package_id,
        lead_id=lead_id,
    ).model_dump()
    metadata["reference"] = reference
    await credits_service.record_pending(
        account_id,
        package["credits"],
        reference,
        purpose="credit_purchase",
        package_id=package_id,
        cost_minor=package["price_minor"],
        currency=currency,
        metadata={"lead_id": lead_id} if lead_id else None,
    )
    try:
        checkout = await gateway.create_checkout(package["price_minor"], metadata)
    except PaymentGatewayError as exc:
        await credits_service.mark_failed(reference, exc.message)
        raise
    if checkout.get("order_id"):
        await credits_service.set_gateway_order_id(reference, checkout["order_id"])
    log.info("credit_purchase_started", account_id=str(account_id), package_id=package_id, reference=reference)
    return {
        **checkout,
        "reference": reference,
        "package": package,
    }

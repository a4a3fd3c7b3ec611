"""
Auto top-up: charge a stored payment method when a provider's balance drops to
their threshold.

At most one top-up is in flight per account (pending entry with a unique
in_flight_key). Transient gateway errors are retried with exponential backoff;
permanent ones go through failure reconciliation, which turns auto top-up off.
If retries run out the entry stays pending until the stale-payment cleanup
cancels it.
"""

import asyncio
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from beanie import PydanticObjectId
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from marketplace.core.audit import log_event
from marketplace.core.config import get_settings
from marketplace.core.exceptions import BadRequestError, PaymentGatewayError
from marketplace.core.logging import get_logger
from marketplace.models.credit_account import CreditAccount
from marketplace.models.user import User
from marketplace.services import credits as credits_service
from marketplace.services.gateway import AutoTopUpMetadata, ChargeReceipt, PaymentFailed, PaymentGateway, PaymentSucceeded
from marketplace.services.payments import reconcile_payment_event
from marketplace.services.pricing import get_package

log = get_logger(__name__)


@dataclass
class TopUpOutcome:
    account_id: str
    status: str  # succeeded | pending | failed | retry_exhausted | skipped
    reference: str | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in ("succeeded", "pending")


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, PaymentGatewayError) and not exc.permanent


async def _charge_with_retry(
    gateway: PaymentGateway,
    account: CreditAccount,
    amount_minor: int,
    metadata: dict[str, Any],
) -> ChargeReceipt:
    s = get_settings()
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(s.gateway_retry_attempts),
        wait=wait_exponential(multiplier=s.gateway_retry_initial_seconds, max=s.gateway_retry_max_seconds),
        retry=retry_if_exception(_is_transient),
        reraise=True,
    ):
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                log.info("auto_topup_charge_retry", account_id=str(account.user_id), attempt=attempt.retry_state.attempt_number)
            return await gateway.charge(
                str(account.user_id),
                account.auto_top_up.payment_method_ref,
                amount_minor,
                metadata,
            )


async def process_auto_top_up(account: CreditAccount, gateway: PaymentGateway) -> TopUpOutcome:
    account_id = str(account.user_id)
    cfg = account.auto_top_up
    if not account.needs_auto_top_up():
        return TopUpOutcome(account_id, "skipped", reason="Auto top-up not needed")
    try:
        package = get_package(cfg.package_id)
    except BadRequestError:
        log.error("auto_topup_invalid_package", account_id=account_id, package_id=cfg.package_id)
        return TopUpOutcome(account_id, "skipped", reason="Invalid package type")
    if await credits_service.has_pending(account.user_id):
        return TopUpOutcome(account_id, "skipped", reason="Top-up already in progress")

    s = get_settings()
    reference = f"atu_{uuid4().hex}"
    meta = AutoTopUpMetadata(account_id=account_id, credits=package["credits"], package_id=package["id"])
    pending = await credits_service.record_pending(
        account.user_id,
        package["credits"],
        reference,
        purpose="auto_topup",
        package_id=package["id"],
        cost_minor=package["price_minor"],
        currency=s.payment_currency,
        in_flight=True,
    )
    if pending is None:
        return TopUpOutcome(account_id, "skipped", reason="Top-up already in progress")

    user = await User.get(account.user_id)
    metadata = {
        **meta.model_dump(),
        "reference": reference,
        "gateway_customer_id": cfg.gateway_customer_id,
        "email": user.email if user else None,
        "contact": user.phone if user else None,
    }
    log.info("auto_topup_charge", account_id=account_id, reference=reference, credits=package["credits"])
    try:
        receipt = await _charge_with_retry(gateway, account, package["price_minor"], metadata)
    except PaymentGatewayError as exc:
        if not exc.permanent:
            log.warning("auto_topup_retries_exhausted", account_id=account_id, reference=reference, reason=exc.message)
            return TopUpOutcome(account_id, "retry_exhausted", reference, exc.message)
        await reconcile_payment_event(
            PaymentFailed(
                external_ref=reference,
                reason=exc.message,
                amount_minor=package["price_minor"],
                currency=s.payment_currency,
                metadata=meta,
            )
        )
        return TopUpOutcome(account_id, "failed", reference, exc.message)

    if receipt.gateway_payment_id:
        await credits_service.set_gateway_payment_id(reference, receipt.gateway_payment_id)
    if receipt.status == "succeeded":
        await reconcile_payment_event(
            PaymentSucceeded(
                external_ref=reference,
                gateway_payment_id=receipt.gateway_payment_id,
                amount_minor=package["price_minor"],
                currency=s.payment_currency,
                metadata=meta,
            )
        )
        return TopUpOutcome(account_id, "succeeded", reference)
    if receipt.status == "failed":
        reason = receipt.failure_reason or "Payment failed"
        await reconcile_payment_event(
            PaymentFailed(
                external_ref=reference,
                gateway_payment_id=receipt.gateway_payment_id,
                reason=reason,
                amount_minor=package["price_minor"],
                currency=s.payment_currency,
                metadata=meta,
            )
        )
        return TopUpOutcome(account_id, "failed", reference, reason)
    # Settles later through the webhook
    return TopUpOutcome(account_id, "pending", reference)


async def run_auto_top_up_sweep(gateway: PaymentGateway) -> dict[str, int]:
    """Top up every enabled account at or below its threshold; one failure never stops the rest."""
    enabled = await CreditAccount.find({"auto_top_up.enabled": True}).to_list()
    due = [a for a in enabled if a.needs_auto_top_up()]
    outcomes = await asyncio.gather(*(process_auto_top_up(a, gateway) for a in due), return_exceptions=True)
    counts = {"processed": len(due), "successful": 0, "failed": 0, "skipped": 0}
    for account, outcome in zip(due, outcomes):
        if isinstance(outcome, BaseException):
            counts["failed"] += 1
            log.error("auto_topup_error", account_id=str(account.user_id), reason=str(outcome), exc_info=outcome)
        elif outcome.status == "skipped":
            counts["skipped"] += 1
        elif outcome.ok:
            counts["successful"] += 1
        else:
            counts["failed"] += 1
    log.info("auto_topup_sweep", **counts)
    return counts


async def update_auto_top_up(
    account_id: PydanticObjectId,
    enabled: bool | None = None,
    threshold: int | None = None,
    package_id: str | None = None,
    payment_method_ref: str | None = None,
    gateway_customer_id: str | None = None,
) -> CreditAccount:
    """Validate and save a provider's auto top-up settings."""
    if threshold is not None and threshold < 0:
        raise BadRequestError("Threshold must not be negative")
    if package_id is not None:
        get_package(package_id)
    account = await credits_service.ensure_account(account_id)
    if enabled and not (payment_method_ref or account.auto_top_up.payment_method_ref):
        raise BadRequestError("A saved payment method is required for auto top-up")
    updated = await credits_service.set_auto_top_up(
        account_id,
        enabled=enabled,
        threshold=threshold,
        package_id=package_id,
        payment_method_ref=payment_method_ref,
        gateway_customer_id=gateway_customer_id,
    )
    await log_event(
        str(account_id),
        "auto_topup_updated",
        "credit_account",
        str(account_id),
        {"enabled": updated.auto_top_up.enabled, "threshold": updated.auto_top_up.threshold, "package_id": updated.auto_top_up.package_id},
    )
    return updated

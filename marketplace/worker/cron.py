"""Periodic job bodies: auto top-up, stale payment cleanup, low-credit reminders, ledger audit."""

from datetime import timedelta

import sentry_sdk

from marketplace.core.audit import log_event
from marketplace.core.config import get_settings
from marketplace.core.events import NotificationRequested, emit
from marketplace.core.exceptions import AppError, LedgerInconsistencyError
from marketplace.core.logging import get_logger
from marketplace.models.credit_account import CreditAccount
from marketplace.models.user import User
from marketplace.services import credits as credits_service
from marketplace.services.auto_topup import run_auto_top_up_sweep
from marketplace.services.gateway import PaymentGateway, get_gateway

log = get_logger(__name__)


async def run_auto_top_up(gateway: PaymentGateway | None = None) -> dict[str, int]:
    """Every few minutes: charge accounts at or below their auto top-up threshold."""
    if gateway is None:
        try:
            gateway = get_gateway()
        except AppError as e:
            log.warning("auto_topup_skipped", reason=e.message)
            return {"processed": 0, "successful": 0, "failed": 0, "skipped": 0}
    return await run_auto_top_up_sweep(gateway)


async def run_cleanup_stale_payments() -> dict[str, int]:
    """
    Hourly: pending payments never confirmed within the TTL are cancelled, and ledger
    entries stuck in processing after a crash are completed or cancelled.
    """
    settings = get_settings()
    stale = await credits_service.cancel_stale_pending(timedelta(hours=settings.pending_payment_ttl_hours))
    resumed = await credits_service.resume_interrupted(timedelta(minutes=settings.interrupted_entry_minutes))
    return {"stale_cancelled": stale, "resumed": resumed["completed"], "interrupted_cancelled": resumed["cancelled"]}


async def run_low_credit_notifications() -> int:
    """Hourly: remind providers without auto top-up that their balance is low."""
    threshold = get_settings().low_credit_threshold
    accounts = await CreditAccount.find(
        {"balance": {"$lt": threshold}, "auto_top_up.enabled": {"$ne": True}}
    ).to_list()
    notified = 0
    for account in accounts:
        user = await User.get(account.user_id)
        if not user or not user.is_active or not user.notifications.low_credits:
            continue
        await emit(
            NotificationRequested(
                account_id=str(account.user_id),
                type="low_credits",
                payload={"balance": account.balance, "threshold": threshold},
            )
        )
        notified += 1
    if notified:
        log.info("low_credit_notifications", count=notified)
    return notified


async def run_ledger_audit() -> dict[str, int]:
    """Daily: check every balance against its completed ledger entries. Mismatches are reported, never fixed."""
    checked = 0
    inconsistent = 0
    async for account in CreditAccount.find_all():
        checked += 1
        try:
            await credits_service.reconcile(account.user_id)
        except LedgerInconsistencyError as e:
            inconsistent += 1
            sentry_sdk.capture_exception(e)
            await log_event(
                None,
                "ledger_inconsistency",
                "credit_account",
                e.account_id,
                {"balance": e.balance, "ledger_total": e.ledger_total},
                severity="critical",
            )
    log.info("ledger_audit", checked=checked, inconsistent=inconsistent)
    return {"checked": checked, "inconsistent": inconsistent}

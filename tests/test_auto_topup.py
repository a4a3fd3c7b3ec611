"""Auto top-up charges, retries and the sweep."""

import pytest

from marketplace.core.exceptions import BadRequestError, PaymentGatewayError
from marketplace.models.audit_log import AuditLog
from marketplace.models.credit_ledger import LedgerEntry
from marketplace.services import credits as credits_service
from marketplace.services.auto_topup import process_auto_top_up, run_auto_top_up_sweep, update_auto_top_up

pytestmark = pytest.mark.asyncio


async def _enrolled(make_user, fund, balance=8, **settings):
    user = await make_user(phone="07700900123")
    if balance:
        await fund(user.id, balance)
    config = {"enabled": True, "threshold": 10, "payment_method_ref": "token_1", "gateway_customer_id": "cust_1"}
    config.update(settings)
    account = await credits_service.set_auto_top_up(user.id, **config)
    return user, account


async def test_sweep_charges_once_and_skips_while_pending(make_user, fund, gateway):
    user, _ = await _enrolled(make_user, fund)

    counts = await run_auto_top_up_sweep(gateway)
    assert counts == {"processed": 1, "successful": 1, "failed": 0, "skipped": 0}
    assert len(gateway.charges) == 1
    charge = gateway.charges[0]
    assert charge["payment_method_ref"] == "token_1"
    assert charge["amount_minor_units"] == 39200
    assert charge["metadata"]["purpose"] == "auto_topup"
    assert charge["metadata"]["reference"].startswith("atu_")
    assert charge["metadata"]["gateway_customer_id"] == "cust_1"
    assert charge["metadata"]["email"] == user.email

    pending = await LedgerEntry.find_one(LedgerEntry.external_payment_ref == charge["metadata"]["reference"])
    assert pending.status == "pending"
    assert pending.gateway_payment_id == "pay_1"
    assert await credits_service.get_balance(user.id) == 8

    # still at threshold, but a top-up is already in flight
    again = await run_auto_top_up_sweep(gateway)
    assert again["skipped"] == 1
    assert len(gateway.charges) == 1


async def test_succeeded_receipt_credits_immediately(make_user, fund, gateway):
    user, account = await _enrolled(make_user, fund)
    gateway.outcomes.append("succeeded")
    outcome = await process_auto_top_up(account, gateway)
    assert outcome.status == "succeeded"
    assert outcome.ok
    assert await credits_service.get_balance(user.id) == 288
    assert not await credits_service.has_pending(user.id)
    assert await credits_service.reconcile(user.id) == 288


async def test_failed_receipt_disables_auto_top_up(make_user, fund, gateway):
    user, account = await _enrolled(make_user, fund)
    gateway.outcomes.append("failed")
    outcome = await process_auto_top_up(account, gateway)
    assert outcome.status == "failed"
    assert outcome.reason == "Card declined"
    refreshed = await credits_service.get_account(user.id)
    assert refreshed.auto_top_up.enabled is False
    assert await credits_service.get_balance(user.id) == 8


async def test_permanent_error_is_not_retried(make_user, fund, gateway):
    user, account = await _enrolled(make_user, fund)
    gateway.outcomes.append(PaymentGatewayError("Card declined", permanent=True))
    outcome = await process_auto_top_up(account, gateway)
    assert outcome.status == "failed"
    assert len(gateway.charges) == 1
    entry = await LedgerEntry.find_one(LedgerEntry.external_payment_ref == outcome.reference)
    assert entry.status == "failed"
    assert (await credits_service.get_account(user.id)).auto_top_up.enabled is False
    assert await AuditLog.find(AuditLog.action == "auto_topup_disabled").count() == 1


async def test_transient_error_is_retried(make_user, fund, gateway):
    user, account = await _enrolled(make_user, fund)
    gateway.outcomes.extend([PaymentGatewayError("timeout"), "succeeded"])
    outcome = await process_auto_top_up(account, gateway)
    assert outcome.status == "succeeded"
    assert len(gateway.charges) == 2
    # both attempts carry the same reference
    assert len({c["metadata"]["reference"] for c in gateway.charges}) == 1
    assert await credits_service.get_balance(user.id) == 288


async def test_exhausted_retries_leave_entry_pending(make_user, fund, gateway):
    user, account = await _enrolled(make_user, fund)
    gateway.outcomes.extend([PaymentGatewayError("timeout") for _ in range(3)])
    outcome = await process_auto_top_up(account, gateway)
    assert outcome.status == "retry_exhausted"
    assert not outcome.ok
    assert len(gateway.charges) == 3
    assert await credits_service.has_pending(user.id)
    # auto top-up stays on; the stale cleanup releases the slot later
    assert (await credits_service.get_account(user.id)).auto_top_up.enabled is True


async def test_not_needed_or_invalid_package_is_skipped(make_user, fund, gateway):
    _, above = await _enrolled(make_user, fund, balance=50)
    assert (await process_auto_top_up(above, gateway)).status == "skipped"
    _, broken = await _enrolled(make_user, fund, package_id="gold")
    outcome = await process_auto_top_up(broken, gateway)
    assert outcome.status == "skipped"
    assert outcome.reason == "Invalid package type"
    assert gateway.charges == []


async def test_one_account_failing_does_not_stop_others(make_user, fund, gateway):
    await _enrolled(make_user, fund)
    await _enrolled(make_user, fund)
    await _enrolled(make_user, fund, enabled=False)
    gateway.outcomes.extend([RuntimeError("boom"), "succeeded"])
    counts = await run_auto_top_up_sweep(gateway)
    assert counts["processed"] == 2
    assert counts["successful"] == 1
    assert counts["failed"] == 1
    assert len(gateway.charges) == 2


async def test_update_auto_top_up_validates(make_user):
    user = await make_user()
    with pytest.raises(BadRequestError):
        await update_auto_top_up(user.id, enabled=True)
    with pytest.raises(BadRequestError):
        await update_auto_top_up(user.id, threshold=-1)
    with pytest.raises(BadRequestError):
        await update_auto_top_up(user.id, package_id="gold")

    account = await update_auto_top_up(user.id, enabled=True, threshold=25, package_id="business", payment_method_ref="token_9")
    assert account.auto_top_up.enabled
    assert account.auto_top_up.threshold == 25
    assert account.auto_top_up.package_id == "business"

    # a later change keeps the stored payment method
    account = await update_auto_top_up(user.id, threshold=5)
    assert account.auto_top_up.payment_method_ref == "token_9"
    assert account.auto_top_up.threshold == 5
    assert await AuditLog.find(AuditLog.action == "auto_topup_updated").count() == 2

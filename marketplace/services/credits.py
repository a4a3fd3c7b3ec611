"""
Credit ledger: the only writer of CreditAccount.balance.

Balance changes are single-document conditional $inc updates, so a debit can never
take an account below zero even under concurrent callers. Every balance change goes
through a LedgerEntry: the entry is written as processing, its amount is applied to
the account together with a $push of the entry id onto recent_entry_ids (so applying
the same entry twice is a no-op), then the entry is flipped to completed with a
balance_after snapshot. Both writes run in a shielded task, so a caller that times
out or is cancelled never leaves one half done. Payment credits are keyed by
external_payment_ref; a unique sparse index settles races between duplicate deliveries.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from beanie import PydanticObjectId
from beanie.odm.queries.update import UpdateResponse
from pymongo.errors import DuplicateKeyError

from marketplace.core.exceptions import BadRequestError, InsufficientCreditsError, LedgerInconsistencyError
from marketplace.core.logging import get_logger
from marketplace.core.pagination import Page, paginate
from marketplace.models.credit_account import RECENT_ENTRY_WINDOW, AccountStats, AutoTopUpConfig, CreditAccount
from marketplace.models.credit_ledger import LedgerEntry

log = get_logger(__name__)

AUTO_TOP_UP_FLIGHT = "auto_topup"
STAT_FIELDS = tuple(AccountStats.model_fields)
AUTO_TOP_UP_FIELDS = tuple(AutoTopUpConfig.model_fields)


@dataclass
class LedgerResult:
    entry: LedgerEntry
    balance: int
    replayed: bool = False  # True when an earlier identical operation already applied


def in_flight_key(account_id: PydanticObjectId, flight: str = AUTO_TOP_UP_FLIGHT) -> str:
    return f"{account_id}:{flight}"


async def ensure_account(account_id: PydanticObjectId) -> CreditAccount:
    """Return the account for a user, creating an empty one on first use."""
    account = await CreditAccount.find_one(CreditAccount.user_id == account_id)
    if account:
        return account
    try:
        account = CreditAccount(user_id=account_id)
        await account.insert()
        log.info("credit_account_created", account_id=str(account_id))
        return account
    except DuplicateKeyError:
        return await CreditAccount.find_one(CreditAccount.user_id == account_id)


async def get_account(account_id: PydanticObjectId) -> CreditAccount | None:
    return await CreditAccount.find_one(CreditAccount.user_id == account_id)


async def get_balance(account_id: PydanticObjectId) -> int:
    """Return current balance for user (0 if no record)."""
    account = await get_account(account_id)
    return account.balance if account else 0


async def _apply_entry(
    account_id: PydanticObjectId,
    entry_id: PydanticObjectId,
    delta: int,
    floor: int | None = None,
) -> tuple[CreditAccount | None, bool]:
    """
    Atomic $inc of the balance by an entry's amount, at most once per entry. With floor
    set, only applies while balance >= floor.

    Returns (account, True) when this call moved the balance, (account, False) when the
    entry had already been applied and (None, False) when the floor guard rejected it.
    """
    query: dict[str, Any] = {"user_id": account_id, "recent_entry_ids": {"$ne": entry_id}}
    if floor is not None:
        query["balance"] = {"$gte": floor}
    updated = await CreditAccount.find_one(query).update(
        {
            "$inc": {"balance": delta},
            "$push": {"recent_entry_ids": {"$each": [entry_id], "$slice": -RECENT_ENTRY_WINDOW}},
            "$set": {"updated_at": datetime.utcnow()},
        },
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is not None:
        return updated, True
    account = await get_account(account_id)
    if account and entry_id in account.recent_entry_ids:
        return account, False
    return None, False


async def _was_applied(entry: LedgerEntry) -> bool:
    account = await get_account(entry.account_id)
    return bool(account and entry.id in account.recent_entry_ids)


async def _settle(entry: LedgerEntry, floor: int | None = None) -> LedgerResult | None:
    """
    Apply a processing entry to its account and mark it completed. Safe to repeat for
    the same entry. None when the floor guard rejects the debit.
    """
    account, applied = await _apply_entry(entry.account_id, entry.id, entry.amount, floor)
    if account is None:
        return None
    done = await LedgerEntry.find_one({"_id": entry.id, "status": {"$ne": "completed"}}).update(
        {
            "$set": {"status": "completed", "balance_after": account.balance, "completed_at": datetime.utcnow()},
            "$unset": {"in_flight_key": "", "failure_reason": ""},
        },
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if done is None:
        done = await LedgerEntry.get(entry.id)
        return LedgerResult(entry=done, balance=done.balance_after, replayed=True)
    return LedgerResult(entry=done, balance=account.balance, replayed=not applied)


async def _abandon(entry: LedgerEntry, claimed_from: str | None) -> None:
    """
    Roll back an entry whose balance change never landed: a fresh entry is deleted and
    a claimed one goes back to its earlier status. An applied entry stays processing
    for resume_interrupted to complete.
    """
    if await _was_applied(entry):
        log.warning("ledger_entry_left_processing", account_id=str(entry.account_id), entry_id=str(entry.id))
        return
    if claimed_from is None:
        await entry.delete()
        return
    await LedgerEntry.find_one({"_id": entry.id, "status": "processing"}).update(
        {"$set": {"status": claimed_from}},
        response_type=UpdateResponse.UPDATE_RESULT,
    )


async def _replay_by_key(idempotency_key: str) -> LedgerResult | None:
    existing = await LedgerEntry.find_one(LedgerEntry.idempotency_key == idempotency_key)
    if not existing:
        return None
    return LedgerResult(entry=existing, balance=existing.balance_after, replayed=True)


async def debit(
    account_id: PydanticObjectId,
    amount: int,
    reason: str,
    idempotency_key: str | None = None,
    related_lead_id: PydanticObjectId | None = None,
    purpose: str = "lead_contact",
    metadata: dict[str, Any] | None = None,
) -> LedgerResult:
    """
    Spend credits. Raises InsufficientCreditsError without touching anything when the
    balance is short. A zero amount (free lead) records a zero adjustment entry.
    Replaying an idempotency_key returns the original entry with replayed=True.
    """
    if amount < 0:
        raise BadRequestError("Debit amount must not be negative")
    if idempotency_key:
        replay = await _replay_by_key(idempotency_key)
        if replay:
            return replay

    account = await ensure_account(account_id)
    now = datetime.utcnow()
    if amount == 0:
        entry = LedgerEntry(
            account_id=account_id,
            kind="adjustment",
            amount=0,
            status="completed",
            balance_after=account.balance,
            reason=reason,
            purpose=purpose,
            idempotency_key=idempotency_key,
            related_lead_id=related_lead_id,
            metadata=metadata or {},
            completed_at=now,
        )
        try:
            await entry.insert()
        except DuplicateKeyError:
            replay = await _replay_by_key(idempotency_key) if idempotency_key else None
            if replay:
                return replay
            raise
        log.info("ledger_free_debit", account_id=str(account_id), reason=reason, balance=account.balance)
        return LedgerResult(entry=entry, balance=account.balance)

    if account.balance < amount:
        log.info("ledger_debit_rejected", account_id=str(account_id), amount=amount, balance=account.balance)
        raise InsufficientCreditsError(credits_required=amount, current_balance=account.balance)

    entry = LedgerEntry(
        account_id=account_id,
        kind="spend",
        amount=-amount,
        status="processing",
        reason=reason,
        purpose=purpose,
        idempotency_key=idempotency_key,
        related_lead_id=related_lead_id,
        metadata=metadata or {},
        claimed_at=now,
    )
    return await asyncio.shield(_debit_entry(entry, amount))


async def _debit_entry(entry: LedgerEntry, amount: int) -> LedgerResult:
    account_id = entry.account_id
    try:
        await entry.insert()
    except DuplicateKeyError:
        # A concurrent call with the same key got there first; report its entry.
        replay = await _replay_by_key(entry.idempotency_key) if entry.idempotency_key else None
        if replay:
            return replay
        raise

    try:
        result = await _settle(entry, floor=amount)
    except BaseException:
        await _abandon(entry, None)
        log.exception("ledger_debit_abandoned", account_id=str(account_id), amount=amount)
        raise
    if result is None:
        await entry.delete()
        current = await get_balance(account_id)
        log.info("ledger_debit_rejected", account_id=str(account_id), amount=amount, balance=current)
        raise InsufficientCreditsError(credits_required=amount, current_balance=current)
    log.info("ledger_debit", account_id=str(account_id), amount=amount, reason=entry.reason, balance=result.balance)
    return result


async def _claim(entry_id: PydanticObjectId, amount: int, extra: dict[str, Any]) -> LedgerEntry | None:
    """Move a non-completed entry to processing; None if another writer completed it first."""
    return await LedgerEntry.find_one({"_id": entry_id, "status": {"$ne": "completed"}}).update(
        {
            "$set": {"status": "processing", "amount": amount, "claimed_at": datetime.utcnow(), **extra},
            "$unset": {"failure_reason": ""},
        },
        response_type=UpdateResponse.NEW_DOCUMENT,
    )


async def credit(
    account_id: PydanticObjectId,
    amount: int,
    reason: str,
    external_payment_ref: str | None = None,
    kind: str = "purchase",
    purpose: str | None = "credit_purchase",
    idempotency_key: str | None = None,
    related_lead_id: PydanticObjectId | None = None,
    package_id: str | None = None,
    cost_minor: int | None = None,
    currency: str | None = None,
    gateway_payment_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> LedgerResult:
    """
    Add credits. Exactly once per external_payment_ref: a ref that is already completed
    is a successful no-op (replayed=True) returning the balance it produced. A pending,
    processing, failed or cancelled entry for the ref is completed in place, so a call
    that timed out can simply be retried.
    """
    if amount <= 0:
        raise BadRequestError("Credit amount must be positive")
    await ensure_account(account_id)

    extra: dict[str, Any] = {}
    for field, value in (
        ("package_id", package_id),
        ("cost_minor", cost_minor),
        ("currency", currency),
        ("gateway_payment_id", gateway_payment_id),
    ):
        if value is not None:
            extra[field] = value

    new_entry = LedgerEntry(
        account_id=account_id,
        kind=kind,
        amount=amount,
        status="processing",
        reason=reason,
        purpose=purpose,
        external_payment_ref=external_payment_ref,
        idempotency_key=idempotency_key,
        related_lead_id=related_lead_id,
        metadata=metadata or {},
        claimed_at=datetime.utcnow(),
        **extra,
    )
    return await asyncio.shield(_credit_entry(new_entry, extra))


async def _credit_entry(new_entry: LedgerEntry, extra: dict[str, Any]) -> LedgerResult:
    account_id = new_entry.account_id
    ref = new_entry.external_payment_ref
    claimed_from: str | None = None
    entry: LedgerEntry | None = None
    if ref:
        existing = await LedgerEntry.find_one(LedgerEntry.external_payment_ref == ref)
        if existing and existing.status == "completed":
            log.info("ledger_credit_replayed", account_id=str(account_id), external_payment_ref=ref)
            return LedgerResult(entry=existing, balance=existing.balance_after, replayed=True)
        if existing:
            entry = await _claim(existing.id, new_entry.amount, extra)
            if entry is None:
                done = await LedgerEntry.get(existing.id)
                return LedgerResult(entry=done, balance=done.balance_after, replayed=True)
            claimed_from = existing.status
    elif new_entry.idempotency_key:
        replay = await _replay_by_key(new_entry.idempotency_key)
        if replay:
            return replay

    if entry is None:
        entry = new_entry
        try:
            await entry.insert()
        except DuplicateKeyError:
            # Lost an insert race; the winner's entry decides.
            if ref:
                return await _credit_entry(new_entry.model_copy(update={"id": None}), extra)
            replay = await _replay_by_key(new_entry.idempotency_key) if new_entry.idempotency_key else None
            if replay:
                return replay
            raise

    try:
        result = await _settle(entry)
    except BaseException:
        await _abandon(entry, claimed_from)
        log.exception("ledger_credit_abandoned", account_id=str(account_id), amount=entry.amount)
        raise
    if result.replayed:
        log.info("ledger_credit_replayed", account_id=str(account_id), external_payment_ref=ref)
        return result
    log.info(
        "ledger_credit",
        account_id=str(account_id),
        amount=entry.amount,
        kind=entry.kind,
        reason=entry.reason,
        external_payment_ref=ref,
        balance=result.balance,
    )
    return result


async def refund(
    account_id: PydanticObjectId,
    amount: int,
    reason: str,
    related_lead_id: PydanticObjectId | None = None,
    metadata: dict[str, Any] | None = None,
) -> LedgerResult:
    """Give spent credits back as a positive refund entry."""
    return await credit(
        account_id,
        amount,
        reason,
        kind="refund",
        purpose="lead_refund",
        related_lead_id=related_lead_id,
        metadata=metadata,
    )


async def release_idempotency_key(entry_id: PydanticObjectId) -> None:
    """Free an entry's idempotency key so the same operation can be attempted again."""
    await LedgerEntry.find_one({"_id": entry_id}).update(
        {"$unset": {"idempotency_key": ""}},
        response_type=UpdateResponse.UPDATE_RESULT,
    )


async def record_pending(
    account_id: PydanticObjectId,
    amount: int,
    external_payment_ref: str,
    purpose: str,
    reason: str = "",
    package_id: str | None = None,
    cost_minor: int | None = None,
    currency: str | None = None,
    in_flight: bool = False,
    metadata: dict[str, Any] | None = None,
) -> LedgerEntry | None:
    """
    Pending purchase entry for a charge that has been initiated but not settled.
    With in_flight=True at most one such entry may exist per account; returns None
    when another one is already outstanding.
    """
    entry = LedgerEntry(
        account_id=account_id,
        kind="purchase",
        amount=amount,
        status="pending",
        reason=reason or purpose,
        purpose=purpose,
        external_payment_ref=external_payment_ref,
        in_flight_key=in_flight_key(account_id) if in_flight else None,
        package_id=package_id,
        cost_minor=cost_minor,
        currency=currency,
        metadata=metadata or {},
    )
    try:
        await entry.insert()
    except DuplicateKeyError:
        log.info("ledger_pending_exists", account_id=str(account_id), external_payment_ref=external_payment_ref)
        return None
    log.info("ledger_pending_recorded", account_id=str(account_id), external_payment_ref=external_payment_ref, amount=amount)
    return entry


async def has_pending(account_id: PydanticObjectId, flight: str = AUTO_TOP_UP_FLIGHT) -> bool:
    return await LedgerEntry.find_one(LedgerEntry.in_flight_key == in_flight_key(account_id, flight)) is not None


async def set_gateway_payment_id(external_payment_ref: str, gateway_payment_id: str) -> None:
    await LedgerEntry.find_one(LedgerEntry.external_payment_ref == external_payment_ref).update(
        {"$set": {"gateway_payment_id": gateway_payment_id}},
        response_type=UpdateResponse.UPDATE_RESULT,
    )


async def set_gateway_order_id(external_payment_ref: str, gateway_order_id: str) -> None:
    await LedgerEntry.find_one(LedgerEntry.external_payment_ref == external_payment_ref).update(
        {"$set": {"gateway_order_id": gateway_order_id}},
        response_type=UpdateResponse.UPDATE_RESULT,
    )


async def find_by_gateway_order_id(gateway_order_id: str) -> LedgerEntry | None:
    return await LedgerEntry.find_one(LedgerEntry.gateway_order_id == gateway_order_id)


async def mark_failed(
    external_payment_ref: str,
    reason: str,
    account_id: PydanticObjectId | None = None,
    amount: int | None = None,
    purpose: str | None = None,
    package_id: str | None = None,
) -> LedgerResult | None:
    """
    pending -> failed. Completed entries are never reverted and an already failed one
    is left alone (both reported as replayed). A failure for a ref we have never seen
    is recorded as a failed entry so a later success can still complete it.
    """
    entry = await LedgerEntry.find_one(
        {"external_payment_ref": external_payment_ref, "status": "pending"}
    ).update(
        {"$set": {"status": "failed", "failure_reason": reason}, "$unset": {"in_flight_key": ""}},
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if entry:
        log.info("ledger_payment_failed", account_id=str(entry.account_id), external_payment_ref=external_payment_ref, reason=reason)
        return LedgerResult(entry=entry, balance=await get_balance(entry.account_id))

    existing = await LedgerEntry.find_one(LedgerEntry.external_payment_ref == external_payment_ref)
    if existing:
        if existing.status == "completed":
            log.warning("ledger_failure_after_completion_ignored", external_payment_ref=external_payment_ref)
        return LedgerResult(entry=existing, balance=await get_balance(existing.account_id), replayed=True)

    if account_id is None or not amount or amount <= 0:
        log.warning("ledger_failure_unknown_ref", external_payment_ref=external_payment_ref)
        return None
    failed = LedgerEntry(
        account_id=account_id,
        kind="purchase",
        amount=amount,
        status="failed",
        reason=purpose or "payment",
        purpose=purpose,
        external_payment_ref=external_payment_ref,
        package_id=package_id,
        failure_reason=reason,
    )
    try:
        await failed.insert()
    except DuplicateKeyError:
        return await mark_failed(external_payment_ref, reason)
    log.info("ledger_payment_failed", account_id=str(account_id), external_payment_ref=external_payment_ref, reason=reason)
    return LedgerResult(entry=failed, balance=await get_balance(account_id))


async def cancel_stale_pending(older_than: timedelta, now: datetime | None = None) -> int:
    """Cancel pending entries older than the TTL; returns how many were cancelled."""
    cutoff = (now or datetime.utcnow()) - older_than
    result = await LedgerEntry.find({"status": "pending", "created_at": {"$lt": cutoff}}).update_many(
        {
            "$set": {"status": "cancelled", "failure_reason": "Payment not confirmed in time"},
            "$unset": {"in_flight_key": ""},
        }
    )
    count = result.modified_count if result else 0
    if count:
        log.info("ledger_stale_pending_cancelled", count=count, cutoff=cutoff.isoformat())
    return count


async def resume_interrupted(older_than: timedelta, now: datetime | None = None) -> dict[str, int]:
    """
    Finish entries left processing by a process that died between the two ledger writes.
    An entry whose balance change landed is completed; one whose change never landed is
    cancelled and its idempotency key freed, so the operation can be attempted again.
    """
    cutoff = (now or datetime.utcnow()) - older_than
    stuck = await LedgerEntry.find({"status": "processing", "claimed_at": {"$lt": cutoff}}).to_list()
    completed = cancelled = 0
    for entry in stuck:
        account = await get_account(entry.account_id)
        if account and entry.id in account.recent_entry_ids:
            result = await LedgerEntry.find_one({"_id": entry.id, "status": "processing"}).update(
                {
                    "$set": {"status": "completed", "balance_after": account.balance, "completed_at": datetime.utcnow()},
                    "$unset": {"in_flight_key": ""},
                },
                response_type=UpdateResponse.UPDATE_RESULT,
            )
            completed += bool(result and result.modified_count)
            continue
        result = await LedgerEntry.find_one({"_id": entry.id, "status": "processing"}).update(
            {
                "$set": {"status": "cancelled", "failure_reason": "Interrupted before the balance changed"},
                "$unset": {"in_flight_key": "", "idempotency_key": ""},
            },
            response_type=UpdateResponse.UPDATE_RESULT,
        )
        cancelled += bool(result and result.modified_count)
    if completed or cancelled:
        log.warning("ledger_interrupted_entries_resumed", completed=completed, cancelled=cancelled)
    return {"completed": completed, "cancelled": cancelled}


async def ledger_total(account_id: PydanticObjectId) -> int:
    total = await LedgerEntry.find(
        LedgerEntry.account_id == account_id,
        LedgerEntry.status == "completed",
    ).sum(LedgerEntry.amount)
    return int(total or 0)


async def reconcile(account_id: PydanticObjectId) -> int:
    """Check balance == sum of completed entries. Raises LedgerInconsistencyError; never corrects."""
    balance = await get_balance(account_id)
    total = await ledger_total(account_id)
    if balance != total:
        log.error("ledger_inconsistency", account_id=str(account_id), balance=balance, ledger_total=total)
        raise LedgerInconsistencyError(str(account_id), balance, total)
    return balance


async def list_entries(
    account_id: PydanticObjectId,
    kind: str | None = None,
    status: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> Page[LedgerEntry]:
    limit, offset = paginate(limit, offset)
    query: dict[str, Any] = {"account_id": account_id}
    if kind:
        query["kind"] = kind
    if status:
        query["status"] = status
    total = await LedgerEntry.find(query).count()
    items = await LedgerEntry.find(query).sort(-LedgerEntry.created_at).skip(offset).limit(limit).to_list()
    return Page[LedgerEntry](items=items, limit=limit, offset=offset, total=total)


async def summarize(account_id: PydanticObjectId, days: int = 30) -> dict[str, Any]:
    """Credit activity for the last `days` days plus lifetime account stats."""
    since = datetime.utcnow() - timedelta(days=days)
    entries = await LedgerEntry.find(
        LedgerEntry.account_id == account_id,
        LedgerEntry.status == "completed",
        LedgerEntry.created_at >= since,
    ).to_list()
    totals = {"purchase": 0, "spend": 0, "refund": 0, "bonus": 0, "adjustment": 0}
    leads_contacted = 0
    for e in entries:
        totals[e.kind] += abs(e.amount)
        if e.purpose == "lead_contact":
            leads_contacted += 1
    account = await ensure_account(account_id)
    spent = totals["spend"]
    return {
        "period_days": days,
        "current_balance": account.balance,
        "credits_purchased": totals["purchase"],
        "credits_spent": spent,
        "credits_refunded": totals["refund"],
        "bonus_credits": totals["bonus"],
        "leads_contacted": leads_contacted,
        "average_cost_per_lead": round(spent / leads_contacted, 2) if leads_contacted else 0,
        "transactions": len(entries),
        "lifetime": account.stats.model_dump(),
        "auto_top_up": account.auto_top_up.model_dump(exclude={"payment_method_ref", "gateway_customer_id"}),
    }


async def bump_stats(account_id: PydanticObjectId, **increments: int) -> None:
    """$inc account stats counters, e.g. bump_stats(uid, leads_contacted=1)."""
    unknown = set(increments) - set(STAT_FIELDS)
    if unknown:
        raise BadRequestError(f"Unknown stats fields: {sorted(unknown)}")
    if not increments:
        return
    await ensure_account(account_id)
    await CreditAccount.find_one({"user_id": account_id}).update(
        {
            "$inc": {f"stats.{k}": v for k, v in increments.items()},
            "$set": {"updated_at": datetime.utcnow()},
        },
        response_type=UpdateResponse.UPDATE_RESULT,
    )


async def set_auto_top_up(account_id: PydanticObjectId, **changes: Any) -> CreditAccount:
    """$set the given auto top-up settings; None values are ignored."""
    unknown = set(changes) - set(AUTO_TOP_UP_FIELDS)
    if unknown:
        raise BadRequestError(f"Unknown auto top-up fields: {sorted(unknown)}")
    account = await ensure_account(account_id)
    fields = {f"auto_top_up.{k}": v for k, v in changes.items() if v is not None}
    if not fields:
        return account
    fields["updated_at"] = datetime.utcnow()
    return await CreditAccount.find_one({"user_id": account_id}).update(
        {"$set": fields},
        response_type=UpdateResponse.NEW_DOCUMENT,
    )


async def disable_auto_top_up(account_id: PydanticObjectId) -> bool:
    """Turn auto top-up off. True only for the call that actually flipped it."""
    result = await CreditAccount.find_one({"user_id": account_id, "auto_top_up.enabled": True}).update(
        {"$set": {"auto_top_up.enabled": False, "updated_at": datetime.utcnow()}},
        response_type=UpdateResponse.UPDATE_RESULT,
    )
    return bool(result and result.modified_count)

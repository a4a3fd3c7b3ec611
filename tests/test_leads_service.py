"""Lead contact workflow and lead listing."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from beanie import PydanticObjectId

from marketplace.core.config import get_settings
from marketplace.core.events import EmailRequested, NotificationRequested
from marketplace.core.exceptions import (
    BadRequestError,
    DuplicateContactError,
    ForbiddenError,
    InsufficientCreditsError,
    RequestInactiveError,
)
from marketplace.models.audit_log import AuditLog
from marketplace.models.credit_ledger import LedgerEntry
from marketplace.models.service_request import ServiceRequest
from marketplace.services import credits as credits_service
from marketplace.services import leads as leads_service

pytestmark = pytest.mark.asyncio


async def _setup(make_user, make_request, **request_kwargs):
    customer = await make_user(user_type="customer", categories=[], phone="07700900000")
    provider = await make_user(business_name="Tap Masters")
    request = await make_request(customer, **request_kwargs)
    return customer, provider, request


async def test_commit_contact_debits_and_records(make_user, make_request, fund, experienced, events):
    customer, provider, request = await _setup(make_user, make_request)
    await experienced(provider.id)
    await fund(provider.id, 10)

    result = await leads_service.commit_contact(request.id, provider.id, "Happy to help")

    assert result["credits_charged"] == 5
    assert result["balance"] == 5
    assert result["customer"]["email"] == customer.email
    assert result["customer"]["phone"] == "07700900000"
    assert await credits_service.get_balance(provider.id) == 5
    spends = await LedgerEntry.find(LedgerEntry.account_id == provider.id, LedgerEntry.kind == "spend").to_list()
    assert len(spends) == 1
    assert spends[0].amount == -5
    assert spends[0].status == "completed"
    assert spends[0].related_lead_id == request.id

    stored = await ServiceRequest.get(request.id)
    assert stored.contacted_provider_ids == [provider.id]
    assert stored.quote_count == 1
    assert stored.status == "receiving_quotes"
    assert stored.contacts[0].message == "Happy to help"
    assert stored.contacts[0].credits_charged == 5

    account = await credits_service.get_account(provider.id)
    assert account.stats.leads_contacted == 6
    assert account.stats.credits_spent == 5
    assert await credits_service.reconcile(provider.id) == 5

    notes = [e for e in events if isinstance(e, NotificationRequested)]
    emails = [e for e in events if isinstance(e, EmailRequested)]
    assert notes[0].account_id == str(customer.id)
    assert notes[0].type == "lead_contacted"
    assert emails[0].to == provider.email
    assert await AuditLog.find(AuditLog.action == "lead_contacted").count() == 1


async def test_insufficient_credits_changes_nothing(make_user, make_request, fund, experienced):
    _, provider, request = await _setup(make_user, make_request)
    await experienced(provider.id)
    await fund(provider.id, 3)

    with pytest.raises(InsufficientCreditsError):
        await leads_service.commit_contact(request.id, provider.id)

    assert await credits_service.get_balance(provider.id) == 3
    assert await LedgerEntry.find(LedgerEntry.account_id == provider.id, LedgerEntry.kind == "spend").count() == 0
    stored = await ServiceRequest.get(request.id)
    assert stored.contacted_provider_ids == []
    assert stored.quote_count == 0
    assert stored.status == "published"


async def test_second_commit_is_rejected_and_charged_once(make_user, make_request, fund, experienced):
    _, provider, request = await _setup(make_user, make_request)
    await experienced(provider.id)
    await fund(provider.id, 20)

    await leads_service.commit_contact(request.id, provider.id)
    with pytest.raises(DuplicateContactError):
        await leads_service.commit_contact(request.id, provider.id)
    with pytest.raises(DuplicateContactError):
        await leads_service.check_contact(request.id, provider.id)

    assert await credits_service.get_balance(provider.id) == 15
    stored = await ServiceRequest.get(request.id)
    assert stored.quote_count == 1


async def test_check_contact_is_read_only(make_user, make_request, fund, experienced):
    _, provider, request = await _setup(make_user, make_request, timeline={"urgency": "urgent"})
    await experienced(provider.id)
    await fund(provider.id, 4)

    for _ in range(2):
        quote = await leads_service.check_contact(request.id, provider.id)
        assert quote["credits_required"] == 9
        assert quote["current_balance"] == 4
        assert quote["can_afford"] is False
        assert quote["shortfall"] == 5
        assert quote["suggested_package"] == "starter"
    assert await credits_service.get_balance(provider.id) == 4
    assert (await ServiceRequest.get(request.id)).quote_count == 0


async def test_free_lead_records_zero_entry(make_user, make_request, events):
    # new provider: 5 -> floor(5 * 0.7) = 3, which is free
    _, provider, request = await _setup(make_user, make_request)
    quote = await leads_service.check_contact(request.id, provider.id)
    assert quote["is_free"] is True
    assert quote["credits_required"] == 0

    result = await leads_service.commit_contact(request.id, provider.id)
    assert result["is_free"] is True
    assert result["credits_charged"] == 0
    entries = await LedgerEntry.find(LedgerEntry.account_id == provider.id).to_list()
    assert [(e.kind, e.amount) for e in entries] == [("adjustment", 0)]
    assert await credits_service.get_balance(provider.id) == 0


async def test_inactive_requests_rejected(make_user, make_request, fund):
    customer, provider, _ = await _setup(make_user, make_request)
    await fund(provider.id, 50)
    expired = await make_request(customer, expires_at=datetime.utcnow() - timedelta(minutes=1))
    closed = await make_request(customer, status="completed")
    for request in (expired, closed):
        with pytest.raises(RequestInactiveError):
            await leads_service.check_contact(request.id, provider.id)
        with pytest.raises(RequestInactiveError):
            await leads_service.commit_contact(request.id, provider.id)
    assert await credits_service.get_balance(provider.id) == 50


async def test_cannot_contact_own_request(make_user, make_request):
    user = await make_user(user_type="both")
    request = await make_request(user)
    with pytest.raises(BadRequestError):
        await leads_service.check_contact(request.id, user.id)


async def test_record_failure_refunds_and_releases_key(make_user, make_request, fund, experienced):
    _, provider, request = await _setup(make_user, make_request)
    await experienced(provider.id)
    await fund(provider.id, 10)

    async def boom(*args, **kwargs):
        raise RuntimeError("write failed")

    with patch.object(leads_service, "_record_contact", boom):
        with pytest.raises(RuntimeError):
            await leads_service.commit_contact(request.id, provider.id)

    assert await credits_service.get_balance(provider.id) == 10
    assert await credits_service.reconcile(provider.id) == 10
    refunds = await LedgerEntry.find(LedgerEntry.account_id == provider.id, LedgerEntry.kind == "refund").to_list()
    assert len(refunds) == 1
    assert refunds[0].amount == 5

    # the same pair can be committed afterwards
    result = await leads_service.commit_contact(request.id, provider.id)
    assert result["balance"] == 5


async def test_simultaneous_commits_charge_once(make_user, make_request, fund, experienced):
    _, provider, request = await _setup(make_user, make_request)
    await experienced(provider.id)
    await fund(provider.id, 20)

    results = await asyncio.gather(
        leads_service.commit_contact(request.id, provider.id),
        leads_service.commit_contact(request.id, provider.id),
        return_exceptions=True,
    )
    assert sorted(type(r).__name__ for r in results) == ["DuplicateContactError", "dict"]
    assert await LedgerEntry.find(LedgerEntry.account_id == provider.id, LedgerEntry.kind == "spend").count() == 1
    assert await credits_service.get_balance(provider.id) == 15
    stored = await ServiceRequest.get(request.id)
    assert stored.contacted_provider_ids == [provider.id]
    assert stored.quote_count == 1


async def test_cancelled_commit_still_records_the_paid_contact(make_user, make_request, fund, experienced):
    _, provider, request = await _setup(make_user, make_request)
    await experienced(provider.id)
    await fund(provider.id, 10)
    original = leads_service._record_contact

    async def slow(*args, **kwargs):
        await asyncio.sleep(0.1)
        return await original(*args, **kwargs)

    with patch.object(leads_service, "_record_contact", slow):
        task = asyncio.create_task(leads_service.commit_contact(request.id, provider.id))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        for _ in range(100):
            if (await ServiceRequest.get(request.id)).contacted_provider_ids:
                break
            await asyncio.sleep(0.01)

    stored = await ServiceRequest.get(request.id)
    assert stored.contacted_provider_ids == [provider.id]
    assert await credits_service.get_balance(provider.id) == 5
    assert await credits_service.reconcile(provider.id) == 5
    with pytest.raises(DuplicateContactError):
        await leads_service.commit_contact(request.id, provider.id)


async def test_request_expiry_follows_configured_ttl(make_user, make_request, monkeypatch):
    monkeypatch.setattr(get_settings(), "request_ttl_days", 7)
    customer = await make_user(user_type="customer", categories=[])
    request = await make_request(customer)
    remaining = request.expires_at - datetime.utcnow()
    assert timedelta(days=6, hours=23) < remaining <= timedelta(days=7)


async def test_message_length_limit(make_user, make_request):
    _, provider, request = await _setup(make_user, make_request)
    with pytest.raises(BadRequestError):
        await leads_service.commit_contact(request.id, provider.id, "x" * 1001)


async def test_list_leads_filters_and_stats(make_user, make_request, experienced, category):
    customer = await make_user(user_type="customer", categories=[])
    blocked = await make_user(user_type="customer", categories=[])
    provider = await make_user(blocked_customers=[blocked.id], location={"coordinates": [-0.1276, 51.5072]})
    await experienced(provider.id)

    await make_request(customer, title="cheap")
    urgent = await make_request(
        customer,
        title="urgent",
        timeline={"urgency": "urgent"},
        budget={"amount": 1200},
        location={"coordinates": [-0.1276, 51.5072], "city": "London"},
    )
    await make_request(customer, title="promo", promotional=True)
    await make_request(blocked, title="from blocked")
    await make_request(customer, title="other category", category_id=PydanticObjectId())
    await make_request(customer, title="expired", expires_at=datetime.utcnow() - timedelta(days=1))
    contacted = await make_request(customer, title="contacted")
    await ServiceRequest.find_one(ServiceRequest.id == contacted.id).update(
        {"$push": {"contacted_provider_ids": provider.id}}
    )

    out = await leads_service.list_leads(provider.id)
    titles = [lead["title"] for lead in out["leads"]]
    assert set(titles) == {"cheap", "urgent", "promo"}
    assert titles[0] == "urgent"  # best match score
    assert out["stats"]["total"] == 3
    assert out["stats"]["free"] == 1
    assert out["stats"]["paid"] == 2
    assert out["stats"]["urgent"] == 1
    assert out["stats"]["first_to_respond"] == 3
    # urgent: 5 + 5 + 4 + 2 = 16; cheap: 5; promo is free
    assert out["stats"]["total_credits_required"] == 21

    free_only = await leads_service.list_leads(provider.id, lead_type="free")
    assert [lead["title"] for lead in free_only["leads"]] == ["promo"]

    by_cost = await leads_service.list_leads(provider.id, sort_by="credits", lead_type="paid")
    assert [lead["title"] for lead in by_cost["leads"]] == ["cheap", "urgent"]

    urgent_only = await leads_service.list_leads(provider.id, urgency="urgent")
    assert [lead["id"] for lead in urgent_only["leads"]] == [str(urgent.id)]

    paged = await leads_service.list_leads(provider.id, limit=1, offset=1)
    assert len(paged["leads"]) == 1
    assert paged["total"] == 3

    budget = await leads_service.list_leads(provider.id, min_budget=1000)
    assert [lead["title"] for lead in budget["leads"]] == ["urgent"]


async def test_match_providers_ranked_for_owner(make_user, make_request):
    customer = await make_user(user_type="customer", categories=[])
    strong = await make_user(first_name="Strong", experience_years=12, is_verified=True)
    weak = await make_user(first_name="Weak")
    await make_user(first_name="Blocker", blocked_customers=[customer.id])
    await make_user(first_name="Customer", user_type="customer")
    request = await make_request(customer)

    ranked = await leads_service.match_providers(request.id, customer.id)
    assert [p["provider_id"] for p in ranked] == [str(strong.id), str(weak.id)]
    assert ranked[0]["match_score"] > ranked[1]["match_score"]

    with pytest.raises(ForbiddenError):
        await leads_service.match_providers(request.id, strong.id)

import os
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory Mongo per test; no retry sleeps
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "marketplace_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("GATEWAY_RETRY_INITIAL_SECONDS", "0")
os.environ.setdefault("GATEWAY_RETRY_MAX_SECONDS", "0")

WEBHOOK_SECRET = os.environ["RAZORPAY_WEBHOOK_SECRET"]


@pytest_asyncio.fixture(autouse=True)
async def db():
    from mongomock_motor import AsyncMongoMockClient

    from marketplace.db.init import init_db
    client = AsyncMongoMockClient()
    await init_db(client)
    yield client


@pytest.fixture
def events():
    """Every domain event emitted during the test."""
    from marketplace.core import events as domain_events
    captured: list = []

    async def handler(event) -> None:
        captured.append(event)

    domain_events.subscribe(handler)
    yield captured
    domain_events.unsubscribe(handler)


@pytest.fixture
def category():
    from beanie import PydanticObjectId
    return PydanticObjectId()


@pytest.fixture
def make_user(category):
    from marketplace.models.user import User
    counter = {"n": 0}

    async def _make(**kwargs: Any) -> User:
        counter["n"] += 1
        n = counter["n"]
        data: dict[str, Any] = {
            "email": f"user{n}@example.com",
            "first_name": "User",
            "last_name": str(n),
            "user_type": "service_provider",
            "categories": [category],
        }
        data.update(kwargs)
        user = User(**data)
        await user.insert()
        return user

    return _make


@pytest.fixture
def make_request(category):
    from marketplace.models.service_request import ServiceRequest

    async def _make(customer, **kwargs: Any) -> ServiceRequest:
        data: dict[str, Any] = {
            "customer_id": customer.id,
            "category_id": category,
            "category_slug": "plumbing",
            "category_name": "Plumbing",
            "title": "Fix a leaking tap",
            "description": "Kitchen tap drips constantly",
            "timeline": {"urgency": "low"},
        }
        data.update(kwargs)
        request = ServiceRequest(**data)
        await request.insert()
        return request

    return _make


@pytest.fixture
def fund():
    """Give an account credits through the ledger (bonus entry)."""
    from marketplace.services import credits as credits_service

    async def _fund(user_id, amount: int) -> int:
        result = await credits_service.credit(user_id, amount, "test_funding", kind="bonus", purpose="manual")
        return result.balance

    return _fund


@pytest.fixture
def experienced():
    """Mark an account as past the new-provider discount."""
    from marketplace.services import credits as credits_service

    async def _experienced(user_id) -> None:
        await credits_service.bump_stats(user_id, leads_contacted=5)

    return _experienced


class FakeGateway:
    """In-memory PaymentGateway. Queue outcomes: "succeeded" / "failed" / "pending" or an exception to raise."""

    def __init__(self) -> None:
        self.charges: list[dict[str, Any]] = []
        self.checkouts: list[dict[str, Any]] = []
        self.outcomes: list[Any] = []

    async def charge(self, account_id, payment_method_ref, amount_minor_units, metadata):
        from marketplace.services.gateway import ChargeReceipt
        self.charges.append(
            {
                "account_id": account_id,
                "payment_method_ref": payment_method_ref,
                "amount_minor_units": amount_minor_units,
                "metadata": dict(metadata),
            }
        )
        outcome = self.outcomes.pop(0) if self.outcomes else "pending"
        if isinstance(outcome, Exception):
            raise outcome
        return ChargeReceipt(
            external_ref=metadata["reference"],
            status=outcome,
            gateway_payment_id=f"pay_{len(self.charges)}",
            failure_reason="Card declined" if outcome == "failed" else None,
        )

    def verify_webhook_signature(self, payload: bytes, signature: str):
        import orjson

        from marketplace.core.exceptions import BadRequestError
        from marketplace.core.security import verify_webhook_signature
        from marketplace.services.gateway import parse_razorpay_event
        if not verify_webhook_signature(payload, signature, WEBHOOK_SECRET):
            raise BadRequestError("Invalid webhook signature")
        return parse_razorpay_event(orjson.loads(payload))

    async def create_checkout(self, amount_minor_units, metadata):
        self.checkouts.append({"amount_minor_units": amount_minor_units, "metadata": dict(metadata)})
        return {
            "order_id": f"order_{len(self.checkouts)}",
            "amount": amount_minor_units,
            "currency": "GBP",
            "key_id": "rzp_test",
        }


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def client(gateway) -> AsyncGenerator[AsyncClient, None]:
    from marketplace.deps import get_payment_gateway
    from marketplace.main import app
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Session cookie header for a user."""
    from marketplace.core.security import create_session_cookie
    from marketplace.deps import SESSION_COOKIE_NAME

    def _headers(user) -> dict[str, str]:
        cookie = create_session_cookie({"user_id": str(user.id), "session_version": user.session_version})
        return {"Cookie": f"{SESSION_COOKIE_NAME}={cookie}"}

    return _headers

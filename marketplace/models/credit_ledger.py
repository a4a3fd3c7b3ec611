from datetime import datetime
from typing import Any, Literal

from beanie import Document, PydanticObjectId
from pydantic import Field, model_validator
from pymongo import ASCENDING, DESCENDING, IndexModel

EntryKind = Literal["purchase", "spend", "refund", "bonus", "adjustment"]
EntryStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]
EntryPurpose = Literal["credit_purchase", "auto_topup", "lead_contact", "lead_refund", "manual"]

POSITIVE_KINDS = ("purchase", "bonus", "refund")


class LedgerEntry(Document):
    account_id: PydanticObjectId  # CreditAccount.user_id
    kind: EntryKind
    amount: int  # positive = credit, negative = debit
    status: EntryStatus = "pending"
    balance_after: int = 0
    reason: str = ""
    purpose: EntryPurpose | None = None
    external_payment_ref: str | None = None  # payment reference, unique when present
    idempotency_key: str | None = None  # caller-supplied replay key, unique when present
    in_flight_key: str | None = None  # "<account>:auto_topup" while a charge is outstanding
    related_lead_id: PydanticObjectId | None = None
    failure_reason: str | None = None
    cost_minor: int | None = None
    currency: str | None = None
    package_id: str | None = None
    gateway_order_id: str | None = None  # checkout order, matches webhooks that carry no notes
    gateway_payment_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    claimed_at: datetime | None = None  # when the entry went to processing
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _amount_sign_matches_kind(self) -> "LedgerEntry":
        if self.kind == "spend" and self.amount > 0:
            raise ValueError("Amount sign must match transaction type")
        if self.kind in POSITIVE_KINDS and self.amount <= 0:
            raise ValueError("Amount sign must match transaction type")
        return self

    @property
    def description(self) -> str:
        if self.kind == "purchase":
            return f"Purchased {self.amount} credits ({self.package_id or 'custom'} package)"
        if self.kind == "spend":
            if self.related_lead_id:
                return f"Used {abs(self.amount)} credits to contact lead"
            return f"Spent {abs(self.amount)} credits"
        if self.kind == "refund":
            return f"Refund: {self.amount} credits"
        if self.kind == "bonus":
            return f"Bonus credits: {self.amount}"
        sign = "+" if self.amount >= 0 else ""
        return f"Credit adjustment: {sign}{self.amount}"

    class Settings:
        name = "credit_ledger"
        # Unset optional refs are omitted so the sparse unique indexes below ignore them.
        keep_nulls = False
        indexes = [
            [("account_id", ASCENDING), ("created_at", DESCENDING)],
            [("account_id", ASCENDING), ("status", ASCENDING)],
            IndexModel([("external_payment_ref", ASCENDING)], unique=True, sparse=True),
            IndexModel([("idempotency_key", ASCENDING)], unique=True, sparse=True),
            IndexModel([("in_flight_key", ASCENDING)], unique=True, sparse=True),
            IndexModel([("gateway_order_id", ASCENDING)], sparse=True),
            [("status", ASCENDING), ("created_at", ASCENDING)],
        ]

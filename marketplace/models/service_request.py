from datetime import datetime, timedelta
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field

from marketplace.core.config import get_settings

ACTIVE_STATUSES = ("published", "receiving_quotes", "quotes_received")

RequestStatus = Literal["published", "receiving_quotes", "quotes_received", "in_progress", "completed", "cancelled"]
Urgency = Literal["low", "medium", "high", "urgent"]


def _default_expiry() -> datetime:
    return datetime.utcnow() + timedelta(days=get_settings().request_ttl_days)


class RequestLocation(BaseModel):
    coordinates: list[float] | None = None  # [longitude, latitude]
    city: str | None = None
    region: str | None = None


class Budget(BaseModel):
    amount: float | None = None
    type: Literal["fixed", "hourly", "negotiable"] = "negotiable"
    currency: str = "GBP"


class Timeline(BaseModel):
    urgency: Urgency = "medium"
    estimated_hours: float | None = None


class LeadContact(BaseModel):
    """One provider unlocking this request; at most one per provider."""
    provider_id: PydanticObjectId
    credits_charged: int = 0
    message: str = ""
    ledger_entry_id: PydanticObjectId | None = None
    contacted_at: datetime = Field(default_factory=datetime.utcnow)


class ServiceRequest(Document):
    customer_id: PydanticObjectId
    category_id: PydanticObjectId
    category_slug: str = ""
    category_name: str = ""
    title: str = ""
    description: str = ""
    location: RequestLocation = Field(default_factory=RequestLocation)
    budget: Budget = Field(default_factory=Budget)
    timeline: Timeline = Field(default_factory=Timeline)
    promotional: bool = False
    status: RequestStatus = "published"
    contacted_provider_ids: list[PydanticObjectId] = Field(default_factory=list)
    contacts: list[LeadContact] = Field(default_factory=list)
    quote_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime = Field(default_factory=_default_expiry)

    def is_active(self, now: datetime | None = None) -> bool:
        now = now or datetime.utcnow()
        return self.status in ACTIVE_STATUSES and self.expires_at > now

    def was_contacted_by(self, provider_id: PydanticObjectId) -> bool:
        return provider_id in self.contacted_provider_ids

    class Settings:
        name = "service_requests"
        indexes = [
            [("category_id", 1), ("status", 1), ("expires_at", 1)],
            [("customer_id", 1), ("status", 1), ("created_at", -1)],
        ]

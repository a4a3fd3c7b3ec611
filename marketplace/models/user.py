from datetime import datetime
from typing import Literal

from beanie import Document, Indexed, PydanticObjectId
from pydantic import BaseModel, Field


class GeoPoint(BaseModel):
    coordinates: list[float] | None = None  # [longitude, latitude]
    city: str | None = None
    postcode: str | None = None


class HourlyRate(BaseModel):
    min: float | None = None
    max: float | None = None
    currency: str = "GBP"


class Rating(BaseModel):
    average: float = 0.0
    count: int = 0


class NotificationPreferences(BaseModel):
    email: bool = True
    low_credits: bool = True
    new_leads: bool = True


class User(Document):
    """Marketplace member. Credits live on CreditAccount, never here."""
    email: Indexed(str, unique=True)
    first_name: str = ""
    last_name: str = ""
    phone: str | None = None
    business_name: str | None = None
    user_type: Literal["customer", "service_provider", "both"] = "service_provider"
    is_active: bool = True

    # Provider profile used by lead matching
    categories: list[PydanticObjectId] = Field(default_factory=list)
    location: GeoPoint = Field(default_factory=GeoPoint)
    is_nationwide: bool = False
    service_radius_km: float = 30
    hourly_rate: HourlyRate = Field(default_factory=HourlyRate)
    rating: Rating = Field(default_factory=Rating)
    experience_years: int | None = None
    response_time_hours: float | None = 24
    is_verified: bool = False
    background_check_verified: bool = False
    email_verified: bool = False
    blocked_customers: list[PydanticObjectId] = Field(default_factory=list)

    notifications: NotificationPreferences = Field(default_factory=NotificationPreferences)
    session_version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def display_name(self) -> str:
        return self.business_name or self.full_name

    class Settings:
        name = "users"
        indexes = [
            [("user_type", 1), ("is_active", 1)],
            [("categories", 1)],
        ]

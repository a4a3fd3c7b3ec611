from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field
from pymongo import ASCENDING, IndexModel

from marketplace.core.config import get_settings

RECENT_ENTRY_WINDOW = 50


def _default_threshold() -> int:
    return get_settings().auto_top_up_default_threshold


class AutoTopUpConfig(BaseModel):
    enabled: bool = False
    threshold: int = Field(default_factory=_default_threshold)
    package_id: str = "starter"
    payment_method_ref: str | None = None  # stored card token for off-session charges
    gateway_customer_id: str | None = None


class AccountStats(BaseModel):
    leads_contacted: int = 0
    credits_spent: int = 0
    total_credits_purchased: int = 0
    total_spent_minor: int = 0  # money paid, minor currency units


class CreditAccount(Document):
    """
    Credit balance per user. Written only by marketplace.services.credits, always with
    targeted $inc/$set updates so concurrent writers never overwrite each other.
    """
    user_id: PydanticObjectId
    balance: int = Field(default=0, ge=0)
    auto_top_up: AutoTopUpConfig = Field(default_factory=AutoTopUpConfig)
    stats: AccountStats = Field(default_factory=AccountStats)
    # last ledger entries whose balance change landed; makes applying an entry idempotent
    recent_entry_ids: list[PydanticObjectId] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def has_low_credits(self) -> bool:
        return self.balance < self.auto_top_up.threshold

    def needs_auto_top_up(self) -> bool:
        cfg = self.auto_top_up
        return cfg.enabled and bool(cfg.payment_method_ref) and self.balance <= cfg.threshold

    class Settings:
        name = "credit_accounts"
        indexes = [
            IndexModel([("user_id", ASCENDING)], unique=True),
            [("auto_top_up.enabled", 1), ("balance", 1)],
        ]

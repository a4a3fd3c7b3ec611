from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="marketplace", alias="MONGODB_DB_NAME")

    # Redis (arq worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Razorpay
    razorpay_key_id: str = Field(default="", alias="RAZORPAY_KEY_ID")
    razorpay_key_secret: str = Field(default="", alias="RAZORPAY_KEY_SECRET")
    razorpay_webhook_secret: str = Field(default="", alias="RAZORPAY_WEBHOOK_SECRET")
    payment_currency: str = Field(default="GBP", alias="PAYMENT_CURRENCY")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Lead pricing (credits)
    lead_base_cost: int = 5
    lead_min_cost: int = 1
    lead_max_cost: int = 20
    free_lead_threshold: int = 3
    new_provider_lead_threshold: int = 5
    new_provider_multiplier: float = 0.7
    promotional_multiplier: float = 0.5
    complex_categories: List[str] = ["legal", "financial", "medical", "engineering"]
    premium_cities: List[str] = ["london", "manchester", "birmingham", "leeds", "glasgow"]

    # Match scoring
    quality_min_rating_count: int = 3
    default_estimated_hours: float = 10.0

    # Leads
    request_ttl_days: int = 30
    lead_scan_limit: int = 500
    max_contact_message_length: int = 1000

    # Credits / auto top-up
    auto_top_up_interval_minutes: int = 5
    auto_top_up_default_threshold: int = 10
    low_credit_threshold: int = 10
    pending_payment_ttl_hours: int = 24
    interrupted_entry_minutes: int = 10  # processing entries older than this are resumed by cleanup

    # Payment gateway retries (transient failures only)
    gateway_retry_attempts: int = 3
    gateway_retry_initial_seconds: float = 1.0
    gateway_retry_max_seconds: float = 30.0

    # Run periodic jobs inside the API process instead of the arq worker
    scheduler_enabled: bool = Field(default=False, alias="SCHEDULER_ENABLED")


@lru_cache
def get_settings() -> Settings:
    return Settings()

from datetime import datetime
from typing import Any, Literal

from beanie import Document
from pydantic import Field


class AuditLog(Document):
    """Append-only trail of money-relevant actions, read by operators."""
    actor_id: str | None = None  # None for system jobs and webhooks
    action: str
    entity_type: str
    entity_id: str | None = None
    severity: Literal["info", "warning", "critical"] = "info"
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("actor_id", 1), ("created_at", -1)],
            [("entity_type", 1), ("entity_id", 1)],
            [("severity", 1), ("created_at", -1)],
        ]

"""Dead-letter: periodic job runs that raised, kept for inspection."""

from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class FailedJob(Document):
    job_name: str
    run_id: str
    reason: str = ""
    context: dict[str, Any] = Field(default_factory=dict)
    failed_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "failed_jobs"
        indexes = [[("job_name", 1), ("failed_at", -1)]]

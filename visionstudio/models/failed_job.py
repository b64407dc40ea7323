"""Scheduler runs that raised, kept for inspection and manual replay."""

from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class FailedJob(Document):
    job_name: str
    run_id: str
    kwargs: dict[str, Any] = Field(default_factory=dict)
    error_type: str = ""
    reason: str = ""
    failed_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "failed_scheduler_runs"
        indexes = [[("job_name", 1), ("failed_at", -1)]]

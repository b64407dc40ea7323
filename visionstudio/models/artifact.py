from datetime import datetime
from typing import Any

from beanie import Document, PydanticObjectId
from pydantic import Field


class Artifact(Document):
    account_id: PydanticObjectId
    key: str  # durable storage key, never a URL
    prompt: str = ""
    content_type: str = "image/png"
    feature: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    cost: int = 0
    action_id: str
    billed: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "artifacts"
        indexes = [
            [("account_id", 1), ("created_at", -1)],
            [("billed", 1), ("created_at", 1)],
        ]

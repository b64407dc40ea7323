from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel


class UsageEntry(Document):
    """Append-only: one row per charge or recorded adjustment."""
    account_id: PydanticObjectId
    label: str  # feature name for charges, "administrative adjustment" for admin balance edits
    delta: int  # negative = charge, positive = credit
    balance_after: int
    reference_id: str | None = None  # artifact id for charges
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "usage_entries"
        indexes = [
            [("account_id", ASCENDING), ("created_at", DESCENDING)],
            [("created_at", DESCENDING)],
            IndexModel(
                [("account_id", ASCENDING), ("idempotency_key", ASCENDING)],
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
                name="account_idempotency_key",
            ),
        ]

from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field


class ChatSession(Document):
    account_id: PydanticObjectId
    title: str = ""
    message_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_activity_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "chat_sessions"
        indexes = [[("account_id", 1), ("last_activity_at", -1)]]

from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field


class ChatMessage(Document):
    session_id: PydanticObjectId
    seq: int
    role: str  # "user" | "assistant"
    content: str
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "chat_messages"
        indexes = [[("session_id", 1), ("seq", 1)]]

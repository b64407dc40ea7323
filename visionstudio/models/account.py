from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class Account(Document):
    username: Indexed(str, unique=True)
    display_name: str = ""
    role: str = "user"  # "user" | "vip" | "admin"
    token_balance: int = 0
    initial_grant: int = 0
    is_approved: bool = False
    expiration_date: datetime | None = None
    contact_email: str | None = None
    mobile: str | None = None
    session_version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "accounts"

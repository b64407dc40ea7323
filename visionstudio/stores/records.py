"""Backend-neutral records returned by every store implementation."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "vip", "admin"]
MessageRole = Literal["user", "assistant"]


class Account(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    display_name: str = ""
    role: Role = "user"
    token_balance: int = 0
    initial_grant: int = 0
    is_approved: bool = False
    expiration_date: datetime | None = None
    contact_email: str | None = None
    mobile: str | None = None
    session_version: int = 0
    created_at: datetime

    def is_active(self, now: datetime | None = None) -> bool:
        """Admins are always active; others need approval and an unexpired account."""
        if self.role == "admin":
            return True
        if not self.is_approved:
            return False
        if self.expiration_date is not None and (now or datetime.utcnow()) > self.expiration_date:
            return False
        return True


class UsageRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    label: str
    delta: int  # negative = charge, positive = credit
    balance_after: int
    reference_id: str | None = None
    idempotency_key: str | None = None
    created_at: datetime


class ChargeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    balance: int
    record: UsageRecord
    duplicate: bool = False


class AdjustResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    previous_balance: int
    balance: int
    delta: int
    record: UsageRecord | None = None


class Artifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    key: str
    prompt: str = ""
    content_type: str = "image/png"
    feature: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    cost: int = 0
    action_id: str
    billed: bool = False
    created_at: datetime


class ChatSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    title: str = ""
    created_at: datetime
    last_activity_at: datetime
    message_count: int = 0


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    seq: int
    role: MessageRole
    content: str
    created_at: datetime

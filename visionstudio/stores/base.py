from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any

from visionstudio.core.config import get_settings
from visionstudio.stores.records import (
    Account,
    AdjustResult,
    Artifact,
    ChargeResult,
    ChatMessage,
    ChatSession,
    MessageRole,
    UsageRecord,
)

PROFILE_FIELDS = frozenset(
    {"display_name", "role", "is_approved", "expiration_date", "contact_email", "mobile"}
)


class LedgerStore(ABC):
    """Accounts plus their append-only usage history."""

    @abstractmethod
    async def create_account(
        self,
        username: str,
        *,
        display_name: str,
        role: str,
        initial_grant: int,
        is_approved: bool,
        expiration_date: datetime | None = None,
        contact_email: str | None = None,
        mobile: str | None = None,
    ) -> Account:
        """Insert a new account holding `initial_grant`; ConflictError on duplicate username."""
        ...

    @abstractmethod
    async def get_account(self, account_id: str) -> Account:
        """Return the account or raise NotFoundError."""
        ...

    @abstractmethod
    async def find_by_username(self, username: str) -> Account | None:
        ...

    @abstractmethod
    async def list_accounts(self) -> list[Account]:
        """All accounts, newest first."""
        ...

    @abstractmethod
    async def update_profile(self, account_id: str, fields: dict[str, Any], bump_session: bool = False) -> Account:
        """Update non-balance fields only."""
        ...

    @abstractmethod
    async def delete_account(self, account_id: str) -> None:
        """Delete the account and its usage records."""
        ...

    @abstractmethod
    async def charge(
        self,
        account_id: str,
        amount: int,
        label: str,
        *,
        allow_negative: bool,
        idempotency_key: str | None = None,
        reference_id: str | None = None,
    ) -> ChargeResult:
        """Debit `amount` and append one record with delta=-amount, all-or-nothing."""
        ...

    @abstractmethod
    async def set_balance(
        self,
        account_id: str,
        new_balance: int,
        label: str,
        *,
        record_debits: bool,
    ) -> AdjustResult:
        """Set an absolute balance; credits always get a record, debits only if record_debits."""
        ...

    @abstractmethod
    async def list_usage(
        self,
        account_id: str | None,
        *,
        since: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[UsageRecord]:
        """Usage records newest first; account_id=None lists every account."""
        ...

    @abstractmethod
    async def sum_deltas(self, account_id: str) -> int:
        ...


class ArtifactStore(ABC):
    @abstractmethod
    async def create(
        self,
        account_id: str,
        *,
        key: str,
        action_id: str,
        prompt: str = "",
        content_type: str = "image/png",
        feature: str = "",
        metadata: dict[str, Any] | None = None,
        cost: int = 0,
    ) -> Artifact:
        ...

    @abstractmethod
    async def get(self, artifact_id: str) -> Artifact | None:
        ...

    @abstractmethod
    async def mark_billed(self, artifact_id: str) -> None:
        ...

    @abstractmethod
    async def delete(self, artifact_id: str) -> None:
        ...

    @abstractmethod
    async def list_for_account(
        self,
        account_id: str,
        *,
        since: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Artifact]:
        """Artifacts newest first."""
        ...

    @abstractmethod
    async def list_unbilled(self, older_than: datetime) -> list[Artifact]:
        ...

    @abstractmethod
    async def delete_for_account(self, account_id: str) -> list[Artifact]:
        """Delete and return every artifact row owned by the account."""
        ...


class ChatStore(ABC):
    @abstractmethod
    async def create_session(self, account_id: str, title: str = "") -> ChatSession:
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> ChatSession | None:
        ...

    @abstractmethod
    async def rename_session(self, session_id: str, account_id: str, title: str) -> bool:
        ...

    @abstractmethod
    async def delete_session(self, session_id: str, account_id: str) -> bool:
        ...

    @abstractmethod
    async def append_message(self, session_id: str, role: MessageRole, content: str) -> ChatMessage:
        """Insert the message and move the session's last activity to its timestamp, atomically."""
        ...

    @abstractmethod
    async def list_sessions(self, account_id: str) -> list[ChatSession]:
        """Sessions by last activity, most recent first."""
        ...

    @abstractmethod
    async def list_messages(self, session_id: str) -> list[ChatMessage]:
        """Messages in append order."""
        ...

    @abstractmethod
    async def delete_for_account(self, account_id: str) -> None:
        ...


@dataclass(frozen=True)
class Stores:
    ledger: LedgerStore
    artifacts: ArtifactStore
    chat: ChatStore


@lru_cache
def get_stores() -> Stores:
    """Select the persistence backend once per process."""
    settings = get_settings()
    if settings.store_backend == "memory":
        from visionstudio.stores.memory import MemoryDatabase
        return MemoryDatabase().stores()
    from visionstudio.stores.mongo import MongoArtifactStore, MongoChatStore, MongoLedgerStore
    return Stores(ledger=MongoLedgerStore(), artifacts=MongoArtifactStore(), chat=MongoChatStore())

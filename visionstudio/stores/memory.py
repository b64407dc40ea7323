"""In-process stores for tests and for running without MongoDB.

State lives on a MemoryDatabase instance; nothing survives a restart.
"""

import asyncio
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any

from visionstudio.core.exceptions import ConflictError, InsufficientBalanceError, NotFoundError
from visionstudio.stores.base import (
    PROFILE_FIELDS,
    ArtifactStore,
    ChatStore,
    LedgerStore,
    Stores,
)
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


def _new_id() -> str:
    return uuid.uuid4().hex


def _window(rows: list, limit: int | None, offset: int) -> list:
    if limit is None:
        return rows[offset:]
    return rows[offset:offset + limit]


class MemoryDatabase:
    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}
        self.usage: list[UsageRecord] = []
        self.artifacts: dict[str, Artifact] = {}
        self.sessions: dict[str, ChatSession] = {}
        self.messages: dict[str, list[ChatMessage]] = defaultdict(list)
        self.locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def stores(self) -> Stores:
        return Stores(
            ledger=MemoryLedgerStore(self),
            artifacts=MemoryArtifactStore(self),
            chat=MemoryChatStore(self),
        )


class MemoryLedgerStore(LedgerStore):
    def __init__(self, db: MemoryDatabase) -> None:
        self.db = db

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
        if await self.find_by_username(username):
            raise ConflictError("Username already exists")
        account = Account(
            id=_new_id(),
            username=username,
            display_name=display_name or username,
            role=role,
            token_balance=initial_grant,
            initial_grant=initial_grant,
            is_approved=is_approved,
            expiration_date=expiration_date,
            contact_email=contact_email,
            mobile=mobile,
            created_at=datetime.utcnow(),
        )
        self.db.accounts[account.id] = account
        return account

    async def get_account(self, account_id: str) -> Account:
        account = self.db.accounts.get(account_id)
        if not account:
            raise NotFoundError("Account not found")
        return account

    async def find_by_username(self, username: str) -> Account | None:
        return next((a for a in self.db.accounts.values() if a.username == username), None)

    async def list_accounts(self) -> list[Account]:
        return sorted(self.db.accounts.values(), key=lambda a: a.created_at, reverse=True)

    async def update_profile(self, account_id: str, fields: dict[str, Any], bump_session: bool = False) -> Account:
        await self.get_account(account_id)
        async with self.db.locks[account_id]:
            account = await self.get_account(account_id)
            changes = {k: v for k, v in fields.items() if k in PROFILE_FIELDS}
            if bump_session:
                changes["session_version"] = account.session_version + 1
            updated = account.model_copy(update=changes)
            self.db.accounts[account_id] = updated
            return updated

    async def delete_account(self, account_id: str) -> None:
        await self.get_account(account_id)
        del self.db.accounts[account_id]
        self.db.locks.pop(account_id, None)
        self.db.usage = [r for r in self.db.usage if r.account_id != account_id]

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
        await self.get_account(account_id)
        async with self.db.locks[account_id]:
            account = await self.get_account(account_id)
            if idempotency_key:
                existing = next(
                    (
                        r for r in self.db.usage
                        if r.account_id == account_id and r.idempotency_key == idempotency_key
                    ),
                    None,
                )
                if existing:
                    return ChargeResult(balance=account.token_balance, record=existing, duplicate=True)
            balance_after = account.token_balance - amount
            if balance_after < 0 and not allow_negative:
                raise InsufficientBalanceError(account.token_balance, amount)
            record = UsageRecord(
                id=_new_id(),
                account_id=account_id,
                label=label,
                delta=-amount,
                balance_after=balance_after,
                reference_id=reference_id,
                idempotency_key=idempotency_key,
                created_at=datetime.utcnow(),
            )
            self.db.accounts[account_id] = account.model_copy(update={"token_balance": balance_after})
            self.db.usage.append(record)
            return ChargeResult(balance=balance_after, record=record)

    async def set_balance(
        self,
        account_id: str,
        new_balance: int,
        label: str,
        *,
        record_debits: bool,
    ) -> AdjustResult:
        await self.get_account(account_id)
        async with self.db.locks[account_id]:
            account = await self.get_account(account_id)
            previous = account.token_balance
            delta = new_balance - previous
            record = None
            if delta > 0 or (delta < 0 and record_debits):
                record = UsageRecord(
                    id=_new_id(),
                    account_id=account_id,
                    label=label,
                    delta=delta,
                    balance_after=new_balance,
                    created_at=datetime.utcnow(),
                )
                self.db.usage.append(record)
            self.db.accounts[account_id] = account.model_copy(update={"token_balance": new_balance})
            return AdjustResult(previous_balance=previous, balance=new_balance, delta=delta, record=record)

    async def list_usage(
        self,
        account_id: str | None,
        *,
        since: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[UsageRecord]:
        rows = [
            r for r in reversed(self.db.usage)
            if (account_id is None or r.account_id == account_id)
            and (since is None or r.created_at >= since)
        ]
        return _window(rows, limit, offset)

    async def sum_deltas(self, account_id: str) -> int:
        return sum(r.delta for r in self.db.usage if r.account_id == account_id)


class MemoryArtifactStore(ArtifactStore):
    def __init__(self, db: MemoryDatabase) -> None:
        self.db = db

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
        artifact = Artifact(
            id=_new_id(),
            account_id=account_id,
            key=key,
            prompt=prompt,
            content_type=content_type,
            feature=feature,
            metadata=metadata or {},
            cost=cost,
            action_id=action_id,
            created_at=datetime.utcnow(),
        )
        self.db.artifacts[artifact.id] = artifact
        return artifact

    async def get(self, artifact_id: str) -> Artifact | None:
        return self.db.artifacts.get(artifact_id)

    async def mark_billed(self, artifact_id: str) -> None:
        artifact = self.db.artifacts.get(artifact_id)
        if artifact:
            self.db.artifacts[artifact_id] = artifact.model_copy(update={"billed": True})

    async def delete(self, artifact_id: str) -> None:
        self.db.artifacts.pop(artifact_id, None)

    async def list_for_account(
        self,
        account_id: str,
        *,
        since: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Artifact]:
        rows = [
            a for a in reversed(list(self.db.artifacts.values()))
            if a.account_id == account_id and (since is None or a.created_at >= since)
        ]
        return _window(rows, limit, offset)

    async def list_unbilled(self, older_than: datetime) -> list[Artifact]:
        return [a for a in self.db.artifacts.values() if not a.billed and a.created_at <= older_than]

    async def delete_for_account(self, account_id: str) -> list[Artifact]:
        owned = [a for a in self.db.artifacts.values() if a.account_id == account_id]
        for a in owned:
            del self.db.artifacts[a.id]
        return owned


class MemoryChatStore(ChatStore):
    def __init__(self, db: MemoryDatabase) -> None:
        self.db = db

    async def create_session(self, account_id: str, title: str = "") -> ChatSession:
        now = datetime.utcnow()
        session = ChatSession(
            id=_new_id(),
            account_id=account_id,
            title=title,
            created_at=now,
            last_activity_at=now,
        )
        self.db.sessions[session.id] = session
        return session

    async def get_session(self, session_id: str) -> ChatSession | None:
        return self.db.sessions.get(session_id)

    async def rename_session(self, session_id: str, account_id: str, title: str) -> bool:
        session = self.db.sessions.get(session_id)
        if not session or session.account_id != account_id:
            return False
        self.db.sessions[session_id] = session.model_copy(update={"title": title})
        return True

    async def delete_session(self, session_id: str, account_id: str) -> bool:
        session = self.db.sessions.get(session_id)
        if not session or session.account_id != account_id:
            return False
        del self.db.sessions[session_id]
        self.db.messages.pop(session_id, None)
        self.db.locks.pop(f"session:{session_id}", None)
        return True

    async def append_message(self, session_id: str, role: MessageRole, content: str) -> ChatMessage:
        if session_id not in self.db.sessions:
            raise NotFoundError("Chat session not found")
        async with self.db.locks[f"session:{session_id}"]:
            session = self.db.sessions.get(session_id)
            if not session:
                raise NotFoundError("Chat session not found")
            now = datetime.utcnow()
            message = ChatMessage(
                id=_new_id(),
                session_id=session_id,
                seq=session.message_count + 1,
                role=role,
                content=content,
                created_at=now,
            )
            self.db.messages[session_id].append(message)
            self.db.sessions[session_id] = session.model_copy(
                update={
                    "message_count": message.seq,
                    "last_activity_at": max(session.last_activity_at, now),
                }
            )
            return message

    async def list_sessions(self, account_id: str) -> list[ChatSession]:
        owned = [s for s in self.db.sessions.values() if s.account_id == account_id]
        return sorted(owned, key=lambda s: s.last_activity_at, reverse=True)

    async def list_messages(self, session_id: str) -> list[ChatMessage]:
        return sorted(self.db.messages.get(session_id, []), key=lambda m: m.seq)

    async def delete_for_account(self, account_id: str) -> None:
        for session in [s for s in self.db.sessions.values() if s.account_id == account_id]:
            del self.db.sessions[session.id]
            self.db.messages.pop(session.id, None)
            self.db.locks.pop(f"session:{session.id}", None)

"""MongoDB stores backed by beanie documents.

Every mutation that touches more than one document runs inside a
transaction, so the server must be a replica set (Atlas, or a local
`--replSet` node).
"""

from datetime import datetime
from typing import Any

from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import In, Inc, Max, Set
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError, PyMongoError

from visionstudio.core.exceptions import ConflictError, InsufficientBalanceError, LedgerUnavailable, NotFoundError
from visionstudio.core.logging import get_logger
from visionstudio.db.init import get_client
from visionstudio.models.account import Account as AccountDoc
from visionstudio.models.artifact import Artifact as ArtifactDoc
from visionstudio.models.chat_message import ChatMessage as ChatMessageDoc
from visionstudio.models.chat_session import ChatSession as ChatSessionDoc
from visionstudio.models.usage_entry import UsageEntry
from visionstudio.stores.base import PROFILE_FIELDS, ArtifactStore, ChatStore, LedgerStore
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

logger = get_logger(__name__)


def _oid(value: str) -> PydanticObjectId | None:
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError):
        return None


def _account(doc: AccountDoc) -> Account:
    return Account(
        id=str(doc.id),
        username=doc.username,
        display_name=doc.display_name,
        role=doc.role,
        token_balance=doc.token_balance,
        initial_grant=doc.initial_grant,
        is_approved=doc.is_approved,
        expiration_date=doc.expiration_date,
        contact_email=doc.contact_email,
        mobile=doc.mobile,
        session_version=doc.session_version,
        created_at=doc.created_at,
    )


def _usage(doc: UsageEntry) -> UsageRecord:
    return UsageRecord(
        id=str(doc.id),
        account_id=str(doc.account_id),
        label=doc.label,
        delta=doc.delta,
        balance_after=doc.balance_after,
        reference_id=doc.reference_id,
        idempotency_key=doc.idempotency_key,
        created_at=doc.created_at,
    )


def _artifact(doc: ArtifactDoc) -> Artifact:
    return Artifact(
        id=str(doc.id),
        account_id=str(doc.account_id),
        key=doc.key,
        prompt=doc.prompt,
        content_type=doc.content_type,
        feature=doc.feature,
        metadata=doc.metadata,
        cost=doc.cost,
        action_id=doc.action_id,
        billed=doc.billed,
        created_at=doc.created_at,
    )


def _session(doc: ChatSessionDoc) -> ChatSession:
    return ChatSession(
        id=str(doc.id),
        account_id=str(doc.account_id),
        title=doc.title,
        created_at=doc.created_at,
        last_activity_at=doc.last_activity_at,
        message_count=doc.message_count,
    )


def _message(doc: ChatMessageDoc) -> ChatMessage:
    return ChatMessage(
        id=str(doc.id),
        session_id=str(doc.session_id),
        seq=doc.seq,
        role=doc.role,
        content=doc.content,
        created_at=doc.created_at,
    )


class MongoLedgerStore(LedgerStore):
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
        doc = AccountDoc(
            username=username,
            display_name=display_name or username,
            role=role,
            token_balance=initial_grant,
            initial_grant=initial_grant,
            is_approved=is_approved,
            expiration_date=expiration_date,
            contact_email=contact_email,
            mobile=mobile,
        )
        try:
            await doc.insert()
        except DuplicateKeyError as exc:
            raise ConflictError("Username already exists") from exc
        return _account(doc)

    async def get_account(self, account_id: str) -> Account:
        oid = _oid(account_id)
        doc = await AccountDoc.get(oid) if oid else None
        if not doc:
            raise NotFoundError("Account not found")
        return _account(doc)

    async def find_by_username(self, username: str) -> Account | None:
        doc = await AccountDoc.find_one(AccountDoc.username == username)
        return _account(doc) if doc else None

    async def list_accounts(self) -> list[Account]:
        docs = await AccountDoc.find_all().sort(-AccountDoc.created_at).to_list()
        return [_account(d) for d in docs]

    async def update_profile(self, account_id: str, fields: dict[str, Any], bump_session: bool = False) -> Account:
        oid = _oid(account_id)
        if not oid:
            raise NotFoundError("Account not found")
        changes = {k: v for k, v in fields.items() if k in PROFILE_FIELDS}
        changes["updated_at"] = datetime.utcnow()
        update: dict[str, Any] = {"$set": changes}
        if bump_session:
            update["$inc"] = {"session_version": 1}
        doc = await AccountDoc.find_one(AccountDoc.id == oid).update(
            update, response_type=UpdateResponse.NEW_DOCUMENT
        )
        if not doc:
            raise NotFoundError("Account not found")
        return _account(doc)

    async def delete_account(self, account_id: str) -> None:
        oid = _oid(account_id)
        if not oid:
            raise NotFoundError("Account not found")

        async def _txn(session):
            result = await AccountDoc.find_one(AccountDoc.id == oid, session=session).delete(session=session)
            if not result or result.deleted_count == 0:
                raise NotFoundError("Account not found")
            await UsageEntry.find(UsageEntry.account_id == oid, session=session).delete(session=session)

        async with get_client().start_session() as session:
            await session.with_transaction(_txn)

    async def _existing_charge(self, oid: PydanticObjectId, idempotency_key: str, session=None) -> ChargeResult | None:
        entry = await UsageEntry.find_one(
            UsageEntry.account_id == oid,
            UsageEntry.idempotency_key == idempotency_key,
            session=session,
        )
        if not entry:
            return None
        account = await AccountDoc.get(oid, session=session)
        return ChargeResult(balance=account.token_balance, record=_usage(entry), duplicate=True)

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
        oid = _oid(account_id)
        if not oid:
            raise NotFoundError("Account not found")

        async def _txn(session) -> ChargeResult:
            if idempotency_key:
                existing = await self._existing_charge(oid, idempotency_key, session=session)
                if existing:
                    return existing
            filters = [AccountDoc.id == oid]
            if not allow_negative:
                filters.append(AccountDoc.token_balance >= amount)
            doc = await AccountDoc.find_one(*filters, session=session).update(
                Inc({AccountDoc.token_balance: -amount}),
                Set({AccountDoc.updated_at: datetime.utcnow()}),
                session=session,
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
            if doc is None:
                current = await AccountDoc.get(oid, session=session)
                if current is None:
                    raise NotFoundError("Account not found")
                raise InsufficientBalanceError(current.token_balance, amount)
            entry = UsageEntry(
                account_id=oid,
                label=label,
                delta=-amount,
                balance_after=doc.token_balance,
                reference_id=reference_id,
                idempotency_key=idempotency_key,
            )
            await entry.insert(session=session)
            return ChargeResult(balance=doc.token_balance, record=_usage(entry))

        try:
            async with get_client().start_session() as session:
                return await session.with_transaction(_txn)
        except DuplicateKeyError:
            # A concurrent charge with the same key committed first
            existing = await self._existing_charge(oid, idempotency_key)
            if existing:
                return existing
            raise LedgerUnavailable("Charge conflicted and no committed record was found")
        except PyMongoError as exc:
            logger.error("ledger_charge_failed", account_id=account_id, amount=amount, error=str(exc))
            raise LedgerUnavailable(str(exc)) from exc

    async def set_balance(
        self,
        account_id: str,
        new_balance: int,
        label: str,
        *,
        record_debits: bool,
    ) -> AdjustResult:
        oid = _oid(account_id)
        if not oid:
            raise NotFoundError("Account not found")

        async def _txn(session) -> AdjustResult:
            old = await AccountDoc.find_one(AccountDoc.id == oid, session=session).update(
                Set({AccountDoc.token_balance: new_balance, AccountDoc.updated_at: datetime.utcnow()}),
                session=session,
                response_type=UpdateResponse.OLD_DOCUMENT,
            )
            if old is None:
                raise NotFoundError("Account not found")
            delta = new_balance - old.token_balance
            record = None
            if delta > 0 or (delta < 0 and record_debits):
                entry = UsageEntry(account_id=oid, label=label, delta=delta, balance_after=new_balance)
                await entry.insert(session=session)
                record = _usage(entry)
            return AdjustResult(previous_balance=old.token_balance, balance=new_balance, delta=delta, record=record)

        try:
            async with get_client().start_session() as session:
                return await session.with_transaction(_txn)
        except PyMongoError as exc:
            logger.error("ledger_adjust_failed", account_id=account_id, error=str(exc))
            raise LedgerUnavailable(str(exc)) from exc

    async def list_usage(
        self,
        account_id: str | None,
        *,
        since: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[UsageRecord]:
        filters = []
        if account_id is not None:
            oid = _oid(account_id)
            if not oid:
                return []
            filters.append(UsageEntry.account_id == oid)
        if since is not None:
            filters.append(UsageEntry.created_at >= since)
        query = UsageEntry.find(*filters).sort(-UsageEntry.created_at, -UsageEntry.id).skip(offset)
        if limit is not None:
            query = query.limit(limit)
        return [_usage(d) for d in await query.to_list()]

    async def sum_deltas(self, account_id: str) -> int:
        oid = _oid(account_id)
        if not oid:
            return 0
        total = await UsageEntry.find(UsageEntry.account_id == oid).sum(UsageEntry.delta)
        return int(total or 0)


class MongoArtifactStore(ArtifactStore):
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
        doc = ArtifactDoc(
            account_id=PydanticObjectId(account_id),
            key=key,
            prompt=prompt,
            content_type=content_type,
            feature=feature,
            metadata=metadata or {},
            cost=cost,
            action_id=action_id,
        )
        await doc.insert()
        return _artifact(doc)

    async def get(self, artifact_id: str) -> Artifact | None:
        oid = _oid(artifact_id)
        doc = await ArtifactDoc.get(oid) if oid else None
        return _artifact(doc) if doc else None

    async def mark_billed(self, artifact_id: str) -> None:
        oid = _oid(artifact_id)
        if oid:
            await ArtifactDoc.find_one(ArtifactDoc.id == oid).update(Set({ArtifactDoc.billed: True}))

    async def delete(self, artifact_id: str) -> None:
        oid = _oid(artifact_id)
        if oid:
            await ArtifactDoc.find_one(ArtifactDoc.id == oid).delete()

    async def list_for_account(
        self,
        account_id: str,
        *,
        since: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Artifact]:
        oid = _oid(account_id)
        if not oid:
            return []
        filters = [ArtifactDoc.account_id == oid]
        if since is not None:
            filters.append(ArtifactDoc.created_at >= since)
        query = ArtifactDoc.find(*filters).sort(-ArtifactDoc.created_at, -ArtifactDoc.id).skip(offset)
        if limit is not None:
            query = query.limit(limit)
        return [_artifact(d) for d in await query.to_list()]

    async def list_unbilled(self, older_than: datetime) -> list[Artifact]:
        docs = await ArtifactDoc.find({"billed": False}, ArtifactDoc.created_at <= older_than).to_list()
        return [_artifact(d) for d in docs]

    async def delete_for_account(self, account_id: str) -> list[Artifact]:
        oid = _oid(account_id)
        if not oid:
            return []
        docs = await ArtifactDoc.find(ArtifactDoc.account_id == oid).to_list()
        await ArtifactDoc.find(ArtifactDoc.account_id == oid).delete()
        return [_artifact(d) for d in docs]


class MongoChatStore(ChatStore):
    async def create_session(self, account_id: str, title: str = "") -> ChatSession:
        now = datetime.utcnow()
        doc = ChatSessionDoc(
            account_id=PydanticObjectId(account_id),
            title=title,
            created_at=now,
            last_activity_at=now,
        )
        await doc.insert()
        return _session(doc)

    async def get_session(self, session_id: str) -> ChatSession | None:
        oid = _oid(session_id)
        doc = await ChatSessionDoc.get(oid) if oid else None
        return _session(doc) if doc else None

    async def rename_session(self, session_id: str, account_id: str, title: str) -> bool:
        oid, owner = _oid(session_id), _oid(account_id)
        if not oid or not owner:
            return False
        result = await ChatSessionDoc.find_one(
            ChatSessionDoc.id == oid, ChatSessionDoc.account_id == owner
        ).update(Set({ChatSessionDoc.title: title}))
        return bool(result and result.matched_count)

    async def delete_session(self, session_id: str, account_id: str) -> bool:
        oid, owner = _oid(session_id), _oid(account_id)
        if not oid or not owner:
            return False

        async def _txn(session) -> bool:
            result = await ChatSessionDoc.find_one(
                ChatSessionDoc.id == oid, ChatSessionDoc.account_id == owner, session=session
            ).delete(session=session)
            if not result or result.deleted_count == 0:
                return False
            await ChatMessageDoc.find(ChatMessageDoc.session_id == oid, session=session).delete(session=session)
            return True

        async with get_client().start_session() as session:
            return await session.with_transaction(_txn)

    async def append_message(self, session_id: str, role: MessageRole, content: str) -> ChatMessage:
        oid = _oid(session_id)
        if not oid:
            raise NotFoundError("Chat session not found")

        async def _txn(session) -> ChatMessage:
            now = datetime.utcnow()
            chat = await ChatSessionDoc.find_one(ChatSessionDoc.id == oid, session=session).update(
                Inc({ChatSessionDoc.message_count: 1}),
                Max({ChatSessionDoc.last_activity_at: now}),
                session=session,
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
            if chat is None:
                raise NotFoundError("Chat session not found")
            doc = ChatMessageDoc(session_id=oid, seq=chat.message_count, role=role, content=content, created_at=now)
            await doc.insert(session=session)
            return _message(doc)

        async with get_client().start_session() as session:
            return await session.with_transaction(_txn)

    async def list_sessions(self, account_id: str) -> list[ChatSession]:
        oid = _oid(account_id)
        if not oid:
            return []
        docs = await ChatSessionDoc.find(ChatSessionDoc.account_id == oid).sort(
            -ChatSessionDoc.last_activity_at
        ).to_list()
        return [_session(d) for d in docs]

    async def list_messages(self, session_id: str) -> list[ChatMessage]:
        oid = _oid(session_id)
        if not oid:
            return []
        docs = await ChatMessageDoc.find(ChatMessageDoc.session_id == oid).sort(+ChatMessageDoc.seq).to_list()
        return [_message(d) for d in docs]

    async def delete_for_account(self, account_id: str) -> None:
        oid = _oid(account_id)
        if not oid:
            return
        sessions = await ChatSessionDoc.find(ChatSessionDoc.account_id == oid).to_list()
        ids = [s.id for s in sessions]
        if ids:
            await ChatMessageDoc.find(In(ChatMessageDoc.session_id, ids)).delete()
        await ChatSessionDoc.find(ChatSessionDoc.account_id == oid).delete()

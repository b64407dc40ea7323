"""Account administration. Balance changes always go through the ledger."""

from datetime import datetime, timedelta
from typing import Any

from visionstudio.core.capabilities import ROLES
from visionstudio.core.config import get_settings
from visionstudio.core.exceptions import BadRequestError, ConflictError
from visionstudio.core.logging import get_logger
from visionstudio.core.security import create_session_token
from visionstudio.services import ledger
from visionstudio.storage.base import get_storage
from visionstudio.stores.base import get_stores
from visionstudio.stores.records import Account

log = get_logger(__name__)

_DEFAULT_TERM = {"user": timedelta(days=7), "vip": timedelta(days=30)}

# Changing any of these invalidates the account's outstanding session tokens
_SESSION_FIELDS = ("role", "is_approved")


def default_expiration(role: str, now: datetime | None = None) -> datetime | None:
    """user: one week, vip: one month, admin: never."""
    term = _DEFAULT_TERM.get(role)
    return (now or datetime.utcnow()) + term if term else None


def session_payload(account: Account) -> dict:
    return {"account_id": account.id, "session_version": account.session_version}


def issue_session_token(account: Account) -> str:
    return create_session_token(session_payload(account))


async def create_account(
    username: str,
    display_name: str = "",
    role: str = "user",
    is_approved: bool = True,
    contact_email: str | None = None,
    mobile: str | None = None,
    initial_grant: int | None = None,
) -> Account:
    if role not in ROLES:
        raise BadRequestError(f"Unknown role: {role}")
    username = username.strip()
    if not username:
        raise BadRequestError("Username is required")
    stores = get_stores()
    if await stores.ledger.find_by_username(username):
        raise ConflictError("Username already exists")
    grant = get_settings().initial_token_grant if initial_grant is None else initial_grant
    account = await stores.ledger.create_account(
        username,
        display_name=display_name or username,
        role=role,
        initial_grant=grant,
        is_approved=is_approved,
        expiration_date=default_expiration(role),
        contact_email=contact_email,
        mobile=mobile,
    )
    log.info("account_created", account_id=account.id, username=username, role=role, initial_grant=grant)
    return account


async def update_account(account_id: str, fields: dict[str, Any], actor: Account) -> Account:
    """Profile fields are written directly; a `token_balance` value becomes a ledger adjustment."""
    stores = get_stores()
    current = await stores.ledger.get_account(account_id)
    fields = dict(fields)
    new_balance = fields.pop("token_balance", None)
    if "role" in fields and fields["role"] not in ROLES:
        raise BadRequestError(f"Unknown role: {fields['role']}")
    bump = any(k in fields and fields[k] != getattr(current, k) for k in _SESSION_FIELDS)
    account = current
    if fields:
        account = await stores.ledger.update_profile(account_id, fields, bump_session=bump)
    if new_balance is not None and new_balance != current.token_balance:
        await ledger.adjust(account_id, new_balance, actor_is_admin=actor.role == "admin")
        account = await stores.ledger.get_account(account_id)
    log.info("account_updated", account_id=account_id, fields=sorted(fields), session_bumped=bump)
    return account


async def delete_account(account_id: str) -> None:
    """Cascade: stored objects, artifact rows, chat sessions and messages, usage records, account."""
    stores = get_stores()
    await stores.ledger.get_account(account_id)
    storage = get_storage()
    for artifact in await stores.artifacts.delete_for_account(account_id):
        await storage.delete(artifact.key)
    await stores.chat.delete_for_account(account_id)
    await stores.ledger.delete_account(account_id)
    log.info("account_deleted", account_id=account_id)


async def list_accounts() -> list[Account]:
    return await get_stores().ledger.list_accounts()


async def get_account(account_id: str) -> Account:
    return await get_stores().ledger.get_account(account_id)

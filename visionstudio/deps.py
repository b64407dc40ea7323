"""Shared FastAPI dependencies."""

from fastapi import Request

from visionstudio.core.exceptions import ForbiddenError, NotFoundError, UnauthorizedError
from visionstudio.core.logging import bind_account_id
from visionstudio.core.security import load_session_token
from visionstudio.stores.base import get_stores
from visionstudio.stores.records import Account

SESSION_COOKIE_NAME = "visionstudio_session"


def _session_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return request.cookies.get(SESSION_COOKIE_NAME)


async def get_authenticated_account(request: Request) -> Account:
    """Dependency: resolve the session token to an account (401 on any failure)."""
    token = _session_token(request)
    if not token:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_token(token)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    account_id = payload.get("account_id")
    if not account_id:
        raise UnauthorizedError("Invalid session")
    try:
        account = await get_stores().ledger.get_account(account_id)
    except NotFoundError:
        raise UnauthorizedError("Account not found")
    if payload.get("session_version") != account.session_version:
        raise UnauthorizedError("Session invalidated")
    bind_account_id(account.id)
    return account


async def get_current_account(request: Request) -> Account:
    """Dependency: authenticated and active (approved, unexpired; admins always)."""
    account = await get_authenticated_account(request)
    if not account.is_active():
        raise ForbiddenError("Account is not approved or has expired")
    return account


async def require_admin(request: Request) -> Account:
    """Dependency: require current account to have role admin."""
    account = await get_authenticated_account(request)
    if account.role != "admin":
        raise ForbiddenError("Admin only")
    return account

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from visionstudio.deps import require_admin
from visionstudio.routers.auth import account_view
from visionstudio.services import accounts as accounts_service
from visionstudio.services import ledger as ledger_service
from visionstudio.services import reconciliation
from visionstudio.stores.records import Account, Role

router = APIRouter()


class AccountCreate(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    display_name: str = ""
    role: Role = "user"
    contact_email: str | None = None
    mobile: str | None = None


class AccountUpdate(BaseModel):
    display_name: str | None = None
    role: Role | None = None
    is_approved: bool | None = None
    expiration_date: datetime | None = None
    contact_email: str | None = None
    mobile: str | None = None
    token_balance: int | None = None


def _admin_view(account: Account) -> dict:
    return {
        **account_view(account),
        "initial_grant": account.initial_grant,
        "contact_email": account.contact_email,
        "mobile": account.mobile,
        "created_at": account.created_at,
    }


@router.get("/accounts")
async def admin_list_accounts(admin: Account = Depends(require_admin)):
    """Admin: all accounts, newest first."""
    accounts = await accounts_service.list_accounts()
    return {"accounts": [_admin_view(a) for a in accounts]}


@router.post("/accounts")
async def admin_create_account(body: AccountCreate, admin: Account = Depends(require_admin)):
    """Admin: create an approved account with the role's default term and the initial grant."""
    account = await accounts_service.create_account(
        body.username,
        display_name=body.display_name,
        role=body.role,
        contact_email=body.contact_email,
        mobile=body.mobile,
    )
    return _admin_view(account)


@router.put("/accounts/{account_id}")
async def admin_update_account(account_id: str, body: AccountUpdate, admin: Account = Depends(require_admin)):
    """Admin: edit profile fields; `token_balance` is applied as a ledger adjustment."""
    nullable = {"expiration_date", "contact_email", "mobile"}
    fields = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None or k in nullable}
    account = await accounts_service.update_account(account_id, fields, actor=admin)
    return _admin_view(account)


@router.delete("/accounts/{account_id}")
async def admin_delete_account(account_id: str, admin: Account = Depends(require_admin)):
    await accounts_service.delete_account(account_id)
    return {"ok": True}


@router.post("/accounts/{account_id}/session")
async def admin_issue_session(account_id: str, admin: Account = Depends(require_admin)):
    """Admin: issue a session token for an account (operators and integrations)."""
    account = await accounts_service.get_account(account_id)
    return {"token": accounts_service.issue_session_token(account)}


@router.get("/accounts/{account_id}/conservation")
async def admin_conservation(account_id: str, admin: Account = Depends(require_admin)):
    report = await ledger_service.verify_conservation(account_id)
    return {**report.model_dump(), "expected_balance": report.expected_balance, "holds": report.holds}


@router.get("/usage")
async def admin_usage(
    admin: Account = Depends(require_admin),
    period: Literal["week"] | None = None,
    page: int = Query(1, ge=1),
):
    """Admin: every account's usage, newest first, with usernames."""
    rows = await ledger_service.list_all_usage(period=period, page=page)
    return {"entries": [r.model_dump() for r in rows], "period": period, "page": None if period else page}


@router.post("/reconcile")
async def admin_reconcile(
    admin: Account = Depends(require_admin),
    grace_seconds: int | None = Query(None, ge=0),
):
    """Admin: charge artifacts left unbilled by a failed charge step (idempotent)."""
    report = await reconciliation.reconcile_unbilled(grace_seconds)
    return report.model_dump()

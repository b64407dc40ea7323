from fastapi import APIRouter, Depends, Response

from visionstudio.deps import SESSION_COOKIE_NAME, get_authenticated_account
from visionstudio.stores.records import Account

router = APIRouter()


def account_view(account: Account) -> dict:
    return {
        "id": account.id,
        "username": account.username,
        "display_name": account.display_name,
        "role": account.role,
        "token_balance": account.token_balance,
        "is_approved": account.is_approved,
        "expiration_date": account.expiration_date,
        "active": account.is_active(),
    }


@router.get("/me")
async def auth_me(account: Account = Depends(get_authenticated_account)):
    """Return the current account, including inactive ones so the UI can explain why."""
    return account_view(account)


@router.post("/logout")
async def auth_logout(response: Response):
    """Clear session cookie."""
    response.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return {"ok": True}

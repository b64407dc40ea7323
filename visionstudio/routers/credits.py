from typing import Literal

from fastapi import APIRouter, Depends, Query

from visionstudio.deps import get_current_account
from visionstudio.services import ledger as ledger_service
from visionstudio.stores.records import Account

router = APIRouter()


@router.get("/balance")
async def credits_balance(account: Account = Depends(get_current_account)):
    """Return current token balance."""
    balance = await ledger_service.get_balance(account.id)
    return {"balance": balance}


@router.get("/ledger")
async def credits_ledger(
    account: Account = Depends(get_current_account),
    period: Literal["week"] | None = None,
    page: int = Query(1, ge=1),
):
    """Usage records newest first: `period=week` for the last seven days, else pages."""
    records = await ledger_service.list_usage(account.id, period=period, page=page)
    out = [
        {
            "id": r.id,
            "label": r.label,
            "delta": r.delta,
            "balance_after": r.balance_after,
            "reference_id": r.reference_id,
            "created_at": r.created_at.isoformat(),
        }
        for r in records
    ]
    return {"entries": out, "period": period, "page": None if period else page}

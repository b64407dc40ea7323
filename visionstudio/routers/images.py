from typing import Literal

from fastapi import APIRouter, Depends, Query

from visionstudio.deps import get_current_account
from visionstudio.services import history as history_service
from visionstudio.stores.records import Account

router = APIRouter()


@router.get("")
async def list_images(
    account: Account = Depends(get_current_account),
    period: Literal["week"] | None = None,
    page: int = Query(1, ge=1),
):
    """Image history newest first, each with a signed URL valid for the history window."""
    images = await history_service.list_images(account.id, period=period, page=page)
    return {"images": [i.model_dump() for i in images], "period": period, "page": None if period else page}


@router.get("/{artifact_id}/url")
async def refresh_image_url(artifact_id: str, account: Account = Depends(get_current_account)):
    """Mint a fresh signed URL from the stored key."""
    entry = await history_service.refresh_url(account.id, artifact_id)
    return {"id": entry.id, "url": entry.url, "expires_in": entry.expires_in}

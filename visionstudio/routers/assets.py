import mimetypes

from fastapi import APIRouter
from fastapi.responses import Response

from visionstudio.core.exceptions import ForbiddenError, NotFoundError
from visionstudio.core.security import verify_asset_token
from visionstudio.storage.base import get_storage
from visionstudio.storage.local import LocalStorage

router = APIRouter()


@router.get("/{token}")
async def read_asset(token: str):
    """Serve a locally stored asset behind a signed, expiring token."""
    storage = get_storage()
    if not isinstance(storage, LocalStorage):
        raise NotFoundError("Not found")
    key = verify_asset_token(token)
    if not key:
        raise ForbiddenError("Link is invalid or has expired")
    try:
        data = await storage.get(key)
    except FileNotFoundError:
        raise NotFoundError("Asset not found")
    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type, headers={"Cache-Control": "private, max-age=60"})

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from visionstudio.deps import get_current_account
from visionstudio.services import history as history_service
from visionstudio.stores.records import Account

router = APIRouter()


class SessionCreate(BaseModel):
    title: str = Field(default="", max_length=200)


class SessionRename(BaseModel):
    title: str = Field(min_length=1, max_length=200)


@router.get("/sessions")
async def list_sessions(account: Account = Depends(get_current_account)):
    """Sessions by last activity, most recent first."""
    sessions = await history_service.list_sessions(account.id)
    return {"sessions": [s.model_dump() for s in sessions]}


@router.post("/sessions")
async def create_session(body: SessionCreate, account: Account = Depends(get_current_account)):
    session = await history_service.create_session(account.id, body.title)
    return session.model_dump()


@router.put("/sessions/{session_id}")
async def rename_session(session_id: str, body: SessionRename, account: Account = Depends(get_current_account)):
    session = await history_service.rename_session(account.id, session_id, body.title)
    return session.model_dump()


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, account: Account = Depends(get_current_account)):
    await history_service.delete_session(account.id, session_id)
    return {"ok": True}


@router.get("/sessions/{session_id}/messages")
async def list_messages(session_id: str, account: Account = Depends(get_current_account)):
    messages = await history_service.list_messages(account.id, session_id)
    return {"messages": [m.model_dump() for m in messages]}

"""Chat sessions and image history, always scoped to the owning account."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from visionstudio.core.config import get_settings
from visionstudio.core.exceptions import ForbiddenError, NotFoundError
from visionstudio.core.logging import get_logger
from visionstudio.core.pagination import history_window
from visionstudio.storage.base import get_storage
from visionstudio.stores.base import get_stores
from visionstudio.stores.records import Artifact, ChatMessage, ChatSession, MessageRole

log = get_logger(__name__)


class ImageEntry(BaseModel):
    id: str
    prompt: str
    feature: str
    content_type: str
    metadata: dict[str, Any]
    cost: int
    created_at: datetime
    url: str
    expires_in: int


def image_entry(artifact: Artifact, ttl_seconds: int) -> ImageEntry:
    return ImageEntry(
        id=artifact.id,
        prompt=artifact.prompt,
        feature=artifact.feature,
        content_type=artifact.content_type,
        metadata=artifact.metadata,
        cost=artifact.cost,
        created_at=artifact.created_at,
        url=get_storage().signed_url(artifact.key, ttl_seconds),
        expires_in=ttl_seconds,
    )


async def create_session(account_id: str, title: str = "") -> ChatSession:
    session = await get_stores().chat.create_session(account_id, title.strip())
    log.info("chat_session_created", session_id=session.id)
    return session


async def get_owned_session(account_id: str, session_id: str) -> ChatSession:
    session = await get_stores().chat.get_session(session_id)
    if not session:
        raise NotFoundError("Chat session not found")
    if session.account_id != account_id:
        raise ForbiddenError("Chat session belongs to another account")
    return session


async def rename_session(account_id: str, session_id: str, title: str) -> ChatSession:
    await get_owned_session(account_id, session_id)
    await get_stores().chat.rename_session(session_id, account_id, title.strip())
    return await get_owned_session(account_id, session_id)


async def delete_session(account_id: str, session_id: str) -> None:
    await get_owned_session(account_id, session_id)
    await get_stores().chat.delete_session(session_id, account_id)
    log.info("chat_session_deleted", session_id=session_id)


async def append_message(session_id: str, role: MessageRole, content: str) -> ChatMessage:
    return await get_stores().chat.append_message(session_id, role, content)


async def list_sessions(account_id: str) -> list[ChatSession]:
    return await get_stores().chat.list_sessions(account_id)


async def list_messages(account_id: str, session_id: str) -> list[ChatMessage]:
    await get_owned_session(account_id, session_id)
    return await get_stores().chat.list_messages(session_id)


async def list_images(account_id: str, period: str | None = None, page: int = 1) -> list[ImageEntry]:
    """Newest first; each entry gets a fresh history-length signed URL."""
    settings = get_settings()
    window = history_window(period, page, settings.history_page_size)
    artifacts = await get_stores().artifacts.list_for_account(
        account_id, since=window.since, limit=window.limit, offset=window.offset
    )
    return [image_entry(a, settings.history_url_ttl_seconds) for a in artifacts]


async def refresh_url(account_id: str, artifact_id: str) -> ImageEntry:
    artifact = await get_stores().artifacts.get(artifact_id)
    if not artifact or artifact.account_id != account_id:
        raise NotFoundError("Image not found")
    return image_entry(artifact, get_settings().history_url_ttl_seconds)

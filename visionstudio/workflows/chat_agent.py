"""Chat turn: the model reply, then a short title when the session has none yet."""

from typing import Any, Literal

from pydantic import BaseModel, Field

from visionstudio.core.capabilities import max_attachments
from visionstudio.core.config import get_settings
from visionstudio.core.exceptions import BadRequestError, NotFoundError
from visionstudio.core.logging import get_logger
from visionstudio.services import history
from visionstudio.services.gateway import AIGateway, HistoryTurn, InlineImage
from visionstudio.stores.records import Account
from visionstudio.workflows.pipeline import ActionPlan, Stage, StageOutput

log = get_logger(__name__)


class Attachment(BaseModel):
    mime_type: str = "image/png"
    data: str  # base64


class ChatRequest(BaseModel):
    session_id: str | None = None
    message: str = Field(min_length=1, max_length=20000)
    mode: Literal["light", "pro"] = "light"
    attachments: list[Attachment] = Field(default_factory=list)


def plan_chat_turn(gateway: AIGateway, body: ChatRequest) -> ActionPlan:
    settings = get_settings()
    feature = "chat_pro" if body.mode == "pro" else "chat_light"
    model = settings.chat_pro_model if body.mode == "pro" else settings.chat_light_model

    async def prepare(account: Account, inputs: dict[str, Any]) -> None:
        limit = max_attachments(account.role)
        if len(body.attachments) > limit:
            raise BadRequestError(f"At most {limit} attachment(s) allowed for role {account.role}")
        inputs["attachments"] = [InlineImage.from_base64(a.data, a.mime_type) for a in body.attachments]
        inputs["history"] = []
        inputs["needs_title"] = True
        if body.session_id:
            session = await history.get_owned_session(account.id, body.session_id)
            messages = await history.list_messages(account.id, session.id)
            inputs["history"] = [HistoryTurn(role=m.role, content=m.content) for m in messages]
            inputs["needs_title"] = not session.title

    async def chat(inputs: dict[str, Any], outputs: dict) -> StageOutput:
        result = await gateway.chat(model, inputs["history"], inputs["message"], inputs["attachments"])
        return StageOutput(payload={"reply": result.text}, cost=result.usage)

    async def title(inputs: dict[str, Any], outputs: dict) -> StageOutput:
        if not inputs.get("needs_title"):
            return StageOutput(payload={"title": None})
        result = await gateway.title(inputs["message"])
        return StageOutput(payload={"title": result.text}, cost=result.usage)

    async def write_turn(account: Account, session_id: str, inputs: dict[str, Any], outputs: dict) -> dict[str, Any]:
        new_title = outputs["title"]["title"]
        if new_title:
            await history.rename_session(account.id, session_id, new_title)
        await history.append_message(session_id, "user", inputs["message"])
        reply = await history.append_message(session_id, "assistant", outputs["chat"]["reply"])
        return {"session_id": session_id, "message_id": reply.id, "title": new_title}

    async def record(account: Account, inputs: dict[str, Any], outputs: dict) -> dict[str, Any]:
        if body.session_id:
            try:
                return await write_turn(account, body.session_id, inputs, outputs)
            except NotFoundError:
                # the session was deleted while the turn ran; the reply is kept in a fresh one
                log.warning("chat_session_gone", account_id=account.id, session_id=body.session_id)
        session = await history.create_session(account.id)
        return await write_turn(account, session.id, inputs, outputs)

    return ActionPlan(
        feature=feature,
        label=feature,
        stages=[Stage("chat", chat), Stage("title", title)],
        inputs={"message": body.message, "mode": body.mode},
        prepare=prepare,
        record=record,
    )

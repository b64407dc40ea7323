from fastapi import APIRouter, Depends, Request

from visionstudio.deps import get_current_account
from visionstudio.services import orchestrator
from visionstudio.services.gateway import AIGateway, get_gateway
from visionstudio.stores.records import Account
from visionstudio.workflows.chat_agent import ChatRequest, plan_chat_turn
from visionstudio.workflows.image_agent import SmartImageRequest, plan_smart_image
from visionstudio.workflows.infographic_agent import (
    InfographicEditRequest,
    InfographicRequest,
    plan_infographic,
    plan_infographic_edit,
)

router = APIRouter()


@router.post("/infographic")
async def create_infographic(
    body: InfographicRequest,
    request: Request,
    account: Account = Depends(get_current_account),
    gateway: AIGateway = Depends(get_gateway),
):
    """Research a topic, render the infographic, store it and charge once for both stages."""
    plan = plan_infographic(gateway, body)
    return await orchestrator.perform_action(account, plan, is_disconnected=request.is_disconnected)


@router.post("/infographic/edit")
async def edit_infographic(
    body: InfographicEditRequest,
    request: Request,
    account: Account = Depends(get_current_account),
    gateway: AIGateway = Depends(get_gateway),
):
    plan = plan_infographic_edit(gateway, body)
    return await orchestrator.perform_action(account, plan, is_disconnected=request.is_disconnected)


@router.post("/images")
async def create_smart_image(
    body: SmartImageRequest,
    request: Request,
    account: Account = Depends(get_current_account),
    gateway: AIGateway = Depends(get_gateway),
):
    plan = plan_smart_image(gateway, body)
    return await orchestrator.perform_action(account, plan, is_disconnected=request.is_disconnected)


@router.post("/chat")
async def chat_turn(
    body: ChatRequest,
    request: Request,
    account: Account = Depends(get_current_account),
    gateway: AIGateway = Depends(get_gateway),
):
    """One chat turn; creates the session when `session_id` is omitted."""
    plan = plan_chat_turn(gateway, body)
    return await orchestrator.perform_action(account, plan, is_disconnected=request.is_disconnected)

"""Metering orchestrator: charge only for durable, delivered results."""

import asyncio
import base64

import pytest

from conftest import PNG
from visionstudio.core.config import get_settings
from visionstudio.core.exceptions import (
    BadRequestError,
    BillingInconsistency,
    ForbiddenError,
    InsufficientBalanceError,
    LedgerUnavailable,
    NotFoundError,
    PipelineStageFailure,
    RequestCancelled,
    StorageFailure,
)
from visionstudio.core.security import verify_asset_token
from visionstudio.services import history, ledger
from visionstudio.services.orchestrator import perform_action
from visionstudio.services.reconciliation import reconcile_unbilled
from visionstudio.storage.base import get_storage
from visionstudio.workflows.chat_agent import Attachment, ChatRequest, plan_chat_turn
from visionstudio.workflows.image_agent import SmartImageRequest, plan_smart_image
from visionstudio.workflows.infographic_agent import (
    InfographicEditRequest,
    InfographicRequest,
    plan_infographic,
    plan_infographic_edit,
)

pytestmark = pytest.mark.asyncio

PNG_B64 = base64.b64encode(PNG).decode()


def _infographic(gateway, topic: str = "photosynthesis"):
    return plan_infographic(gateway, InfographicRequest(topic=topic))


async def test_infographic_success_charges_total_cost(make_account, gateway, stores):
    account = await make_account(balance=1000)
    result = await perform_action(account, _infographic(gateway))

    assert gateway.calls == ["research", "render"]
    assert result.cost == 100
    assert result.balance == 900
    assert await ledger.get_balance(account.id) == 900

    artifact = await stores.artifacts.get(result.artifact.id)
    assert artifact.billed
    assert artifact.key.startswith(f"accounts/{account.id}/visual_engine/")
    assert artifact.metadata["facts"] == ["fact one", "fact two"]
    assert await get_storage().get(artifact.key) == PNG

    [record] = await ledger.list_usage(account.id)
    assert record.delta == -100
    assert record.label == "visual_engine"
    assert record.reference_id == artifact.id
    assert record.idempotency_key == result.action_id

    token = result.access_url.rsplit("/", 1)[1]
    assert verify_asset_token(token) == artifact.key
    assert "data" not in result.outputs["render"]


async def test_stage_failure_charges_nothing(make_account, gateway, gateway_error, stores):
    account = await make_account(balance=1000)
    gateway.fail["render"] = gateway_error("unavailable", "model overloaded")

    with pytest.raises(PipelineStageFailure) as exc:
        await perform_action(account, _infographic(gateway))

    assert exc.value.stage == "render"
    assert exc.value.reason == "unavailable"
    assert exc.value.accrued_cost == 40
    assert await ledger.get_balance(account.id) == 1000
    assert await ledger.list_usage(account.id) == []
    assert await stores.artifacts.list_for_account(account.id) == []


async def test_stage_timeout_charges_nothing(monkeypatch, make_account, gateway):
    monkeypatch.setenv("STAGE_TIMEOUT_SECONDS", "0.05")
    get_settings.cache_clear()
    account = await make_account(balance=1000)
    gateway.delay["render"] = 2

    with pytest.raises(PipelineStageFailure) as exc:
        await perform_action(account, _infographic(gateway))
    assert exc.value.reason == "timeout"
    assert await ledger.list_usage(account.id) == []


async def test_storage_failure_charges_nothing(monkeypatch, make_account, gateway, stores):
    account = await make_account(balance=1000)

    async def unreachable(*args, **kwargs):
        raise StorageFailure()

    monkeypatch.setattr(get_storage(), "put", unreachable)
    with pytest.raises(StorageFailure):
        await perform_action(account, _infographic(gateway))
    assert await ledger.get_balance(account.id) == 1000
    assert await ledger.list_usage(account.id) == []
    assert await stores.artifacts.list_for_account(account.id) == []


async def test_artifact_row_failure_removes_object_and_charges_nothing(monkeypatch, make_account, gateway, stores):
    account = await make_account(balance=1000)

    async def broken_insert(*args, **kwargs):
        raise RuntimeError("write concern timeout")

    monkeypatch.setattr(stores.artifacts, "create", broken_insert)
    with pytest.raises(StorageFailure):
        await perform_action(account, _infographic(gateway))
    assert await ledger.get_balance(account.id) == 1000
    assert await ledger.list_usage(account.id) == []
    assert [p for p in get_storage().root.rglob("*") if p.is_file()] == []

async def test_ledger_outage_after_store_flags_inconsistency(monkeypatch, make_account, gateway, stores):
    account = await make_account(balance=1000)
    captured = []

    async def ledger_down(*args, **kwargs):
        raise LedgerUnavailable()

    real_charge = stores.ledger.charge
    monkeypatch.setattr(stores.ledger, "charge", ledger_down)
    monkeypatch.setattr(
        "visionstudio.services.orchestrator.sentry_sdk.capture_message",
        lambda message, level=None: captured.append((message, level)),
    )

    with pytest.raises(BillingInconsistency) as exc:
        await perform_action(account, _infographic(gateway), action_id="act-1")

    assert exc.value.cost == 100
    assert exc.value.action_id == "act-1"
    artifact = await stores.artifacts.get(exc.value.artifact_id)
    assert artifact is not None and not artifact.billed
    assert len(captured) == 1 and captured[0][1] == "error"
    assert await ledger.get_balance(account.id) == 1000

    # once the ledger is back, reconciliation settles the stored artifact exactly once
    monkeypatch.setattr(stores.ledger, "charge", real_charge)
    report = await reconcile_unbilled(grace_seconds=0)
    assert report.charged == 1
    assert await ledger.get_balance(account.id) == 900
    assert (await stores.artifacts.get(artifact.id)).billed
    again = await reconcile_unbilled(grace_seconds=0)
    assert again.examined == 0


async def test_reject_policy_preflight_on_empty_balance(monkeypatch, make_account, gateway):
    monkeypatch.setenv("BALANCE_POLICY", "reject")
    get_settings.cache_clear()
    account = await make_account(balance=0)
    with pytest.raises(InsufficientBalanceError):
        await perform_action(account, _infographic(gateway))
    assert gateway.calls == []


async def test_reject_policy_discards_unpaid_artifact(monkeypatch, make_account, gateway, stores):
    monkeypatch.setenv("BALANCE_POLICY", "reject")
    get_settings.cache_clear()
    account = await make_account(balance=50)

    with pytest.raises(InsufficientBalanceError):
        await perform_action(account, _infographic(gateway))
    assert await stores.artifacts.list_for_account(account.id) == []
    assert await ledger.get_balance(account.id) == 50
    assert not list((get_storage().root / "accounts").rglob("*.png"))


async def test_allow_negative_policy_completes(make_account, gateway):
    account = await make_account(balance=50)
    result = await perform_action(account, _infographic(gateway))
    assert result.balance == -50


async def test_disconnected_client_is_not_charged(make_account, gateway, stores):
    account = await make_account(balance=1000)

    async def gone() -> bool:
        return True

    with pytest.raises(RequestCancelled):
        await perform_action(account, _infographic(gateway), is_disconnected=gone)
    assert await ledger.list_usage(account.id) == []
    assert await stores.artifacts.list_for_account(account.id) == []


async def test_pro_chat_forbidden_for_user_before_any_call(make_account, gateway):
    account = await make_account(role="user")
    plan = plan_chat_turn(gateway, ChatRequest(message="hi", mode="pro"))
    with pytest.raises(ForbiddenError):
        await perform_action(account, plan)
    assert gateway.calls == []
    assert await ledger.list_usage(account.id) == []


async def test_unapproved_account_cannot_act(make_account, gateway):
    account = await make_account(is_approved=False)
    with pytest.raises(ForbiddenError):
        await perform_action(account, _infographic(gateway))
    assert gateway.calls == []


async def test_chat_turn_creates_titled_session(make_account, gateway):
    account = await make_account(role="vip", balance=500)
    result = await perform_action(account, plan_chat_turn(gateway, ChatRequest(message="hello", mode="pro")))

    assert result.cost == 15
    assert result.balance == 485
    assert result.title == "Short title"
    session = await history.get_owned_session(account.id, result.session_id)
    assert session.title == "Short title"
    messages = await history.list_messages(account.id, result.session_id)
    assert [(m.role, m.content) for m in messages] == [("user", "hello"), ("assistant", "echo: hello")]
    [record] = await ledger.list_usage(account.id)
    assert record.label == "chat_pro"
    assert record.reference_id is None


async def test_follow_up_turn_uses_history_and_skips_title(make_account, gateway):
    account = await make_account(balance=500)
    first = await perform_action(account, plan_chat_turn(gateway, ChatRequest(message="one")))
    gateway.calls.clear()

    second = await perform_action(
        account, plan_chat_turn(gateway, ChatRequest(message="two", session_id=first.session_id))
    )
    assert gateway.calls == ["chat"]
    assert second.cost == 12
    assert second.title is None
    assert [t.content for t in gateway.last_chat_history] == ["one", "echo: one"]
    messages = await history.list_messages(account.id, first.session_id)
    assert [m.seq for m in messages] == [1, 2, 3, 4]


async def test_session_deleted_mid_turn_moves_reply_to_new_session(make_account, gateway, stores):
    account = await make_account(balance=500)
    first = await perform_action(account, plan_chat_turn(gateway, ChatRequest(message="one")))
    gateway.delay["chat"] = 0.1

    async def delete_soon():
        await asyncio.sleep(0.02)
        await history.delete_session(account.id, first.session_id)

    result, _ = await asyncio.gather(
        perform_action(account, plan_chat_turn(gateway, ChatRequest(message="two", session_id=first.session_id))),
        delete_soon(),
    )
    assert result.cost == 12
    assert result.balance == 500 - 15 - 12
    assert result.session_id != first.session_id
    messages = await history.list_messages(account.id, result.session_id)
    assert [(m.role, m.content) for m in messages] == [("user", "two"), ("assistant", "echo: two")]
    with pytest.raises(NotFoundError):
        await history.get_owned_session(account.id, first.session_id)
    assert f"session:{first.session_id}" not in stores.chat.db.locks


async def test_record_failure_after_charge_still_returns_result(make_account, gateway):
    account = await make_account(balance=500)
    plan = plan_chat_turn(gateway, ChatRequest(message="hello"))

    async def lost_session(*args):
        raise NotFoundError("Chat session not found")

    plan.record = lost_session
    result = await perform_action(account, plan)
    assert result.cost == 15
    assert result.balance == 485
    assert result.session_id is None
    assert await ledger.get_balance(account.id) == 485
    assert len(await ledger.list_usage(account.id)) == 1

async def test_chat_in_foreign_session_is_forbidden(make_account, gateway):
    owner = await make_account("owner")
    intruder = await make_account("intruder")
    session = await history.create_session(owner.id, "private")
    with pytest.raises(ForbiddenError):
        await perform_action(intruder, plan_chat_turn(gateway, ChatRequest(message="x", session_id=session.id)))
    assert gateway.calls == []


async def test_attachment_limit_by_role(make_account, gateway):
    user = await make_account("user1", role="user")
    vip = await make_account("vip1", role="vip")
    two = [Attachment(data=PNG_B64), Attachment(data=PNG_B64)]

    with pytest.raises(BadRequestError):
        await perform_action(user, plan_chat_turn(gateway, ChatRequest(message="look", attachments=two)))
    assert gateway.calls == []

    result = await perform_action(vip, plan_chat_turn(gateway, ChatRequest(message="look", attachments=two)))
    assert result.cost == 15


async def test_smart_image_limit_and_success(make_account, gateway):
    account = await make_account(role="user")
    with pytest.raises(BadRequestError):
        await perform_action(
            account, plan_smart_image(gateway, SmartImageRequest(prompt="p", images=[PNG_B64, PNG_B64]))
        )

    result = await perform_action(
        account, plan_smart_image(gateway, SmartImageRequest(tool="stylist", prompt="p", images=[PNG_B64]))
    )
    assert result.cost == 30
    assert result.artifact.metadata == {"tool": "stylist", "reference_images": 1}


async def test_edit_of_owned_artifact(make_account, gateway):
    account = await make_account(balance=1000)
    original = await perform_action(account, _infographic(gateway))

    edited = await perform_action(
        account,
        plan_infographic_edit(gateway, InfographicEditRequest(instruction="add labels", artifact_id=original.artifact.id)),
    )
    assert edited.cost == 25
    assert edited.balance == 875
    assert edited.artifact.metadata == {"edit_of": original.artifact.id}


async def test_edit_of_foreign_artifact_looks_missing(make_account, gateway):
    owner = await make_account("owner")
    other = await make_account("other")
    original = await perform_action(owner, _infographic(gateway))
    gateway.calls.clear()

    with pytest.raises(NotFoundError):
        await perform_action(
            other,
            plan_infographic_edit(gateway, InfographicEditRequest(instruction="x", artifact_id=original.artifact.id)),
        )
    assert gateway.calls == []
    assert await ledger.list_usage(other.id) == []


async def test_edit_of_uploaded_image(make_account, gateway):
    account = await make_account()
    result = await perform_action(
        account,
        plan_infographic_edit(
            gateway, InfographicEditRequest(instruction="brighter", image_base64=f"data:image/png;base64,{PNG_B64}")
        ),
    )
    assert result.cost == 25
    assert result.artifact.metadata == {}

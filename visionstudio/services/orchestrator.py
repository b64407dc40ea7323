"""Metering orchestrator: the single entry point for every token-consuming action.

Order of side effects for one action:
access checks -> pipeline -> (artifact put -> artifact row) -> charge -> history.
Nothing is charged unless the pipeline succeeded, the caller is still
connected and, for artifact actions, the bytes are durably stored.
"""

import mimetypes
import uuid
from typing import Any, Awaitable, Callable

import sentry_sdk
from pydantic import BaseModel, Field

from visionstudio.core.capabilities import is_allowed
from visionstudio.core.config import get_settings
from visionstudio.core.exceptions import (
    AppError,
    BillingInconsistency,
    ForbiddenError,
    InsufficientBalanceError,
    LedgerUnavailable,
    PipelineStageFailure,
    RequestCancelled,
    StorageFailure,
)
from visionstudio.core.logging import get_logger
from visionstudio.services import ledger
from visionstudio.services.history import ImageEntry, image_entry
from visionstudio.storage.base import get_storage
from visionstudio.stores.base import get_stores
from visionstudio.stores.records import Account
from visionstudio.workflows.pipeline import ActionPlan, run_pipeline

log = get_logger(__name__)


class ActionResult(BaseModel):
    action_id: str
    feature: str
    cost: int
    balance: int
    outputs: dict[str, Any] = Field(default_factory=dict)
    artifact: ImageEntry | None = None
    access_url: str | None = None
    session_id: str | None = None
    title: str | None = None


def _public_outputs(outputs: dict[str, dict[str, Any]]) -> dict[str, Any]:
    """Stage payloads minus raw bytes; binary results are only reachable through signed URLs."""
    return {
        stage: {k: v for k, v in payload.items() if not isinstance(v, bytes)}
        for stage, payload in outputs.items()
    }


def _local_key(label: str, action_id: str, content_type: str) -> str:
    ext = mimetypes.guess_extension(content_type) or ".bin"
    return f"{label}/{action_id}{ext}"


async def _discard_object(storage, key: str) -> None:
    try:
        await storage.delete(key)
    except Exception:
        log.exception("orphaned_object", key=key)


async def _record(plan: ActionPlan, account: Account, outputs: dict, alog) -> dict[str, Any]:
    """Post-charge bookkeeping. The turn is already billed, so a failure here is logged, not raised."""
    if not plan.record:
        return {}
    try:
        return await plan.record(account, plan.inputs, outputs)
    except AppError as e:
        alog.error("action_record_failed", code=e.code, error=e.message)
        return {}


def _check_access(account: Account, feature: str) -> None:
    if not account.is_active():
        raise ForbiddenError("Account is not approved or has expired")
    if not is_allowed(account.role, feature):
        raise ForbiddenError(f"Feature '{feature}' is not available for role '{account.role}'")


async def perform_action(
    account: Account,
    plan: ActionPlan,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    action_id: str | None = None,
) -> ActionResult:
    settings = get_settings()
    stores = get_stores()
    action_id = action_id or uuid.uuid4().hex
    alog = log.bind(action_id=action_id, account_id=account.id, feature=plan.feature)

    _check_access(account, plan.feature)
    if settings.balance_policy == "reject" and account.token_balance <= 0:
        raise InsufficientBalanceError(account.token_balance, 0)
    if plan.prepare:
        await plan.prepare(account, plan.inputs)

    result = await run_pipeline(plan.stages, plan.inputs, default_timeout=settings.stage_timeout_seconds)
    if not result.ok:
        failure = result.failure
        alog.warning("action_pipeline_failed", stage=failure.stage, reason=failure.reason,
                     accrued_cost=result.total_cost)
        raise PipelineStageFailure(failure.stage, failure.reason, result.total_cost, failure.message)

    if is_disconnected is not None and await is_disconnected():
        alog.info("action_cancelled", discarded_cost=result.total_cost)
        raise RequestCancelled()

    cost = result.total_cost
    artifact = None
    if plan.artifact:
        draft = plan.artifact(result.outputs)
        storage = get_storage()
        key = await storage.put(
            account.id, _local_key(plan.label, action_id, draft.content_type), draft.data, draft.content_type
        )
        try:
            artifact = await stores.artifacts.create(
                account.id,
                key=key,
                action_id=action_id,
                prompt=draft.prompt,
                content_type=draft.content_type,
                feature=plan.feature,
                metadata=draft.metadata,
                cost=cost,
            )
        except Exception as exc:
            alog.exception("artifact_row_failed", key=key)
            await _discard_object(storage, key)
            raise StorageFailure() from exc

    try:
        charged = await ledger.charge(
            account.id,
            cost,
            plan.label,
            idempotency_key=action_id,
            reference_id=artifact.id if artifact else None,
        )
    except LedgerUnavailable:
        if artifact is None:
            raise
        alog.error("billing_inconsistency", artifact_id=artifact.id, cost=cost)
        sentry_sdk.capture_message(
            f"Billing inconsistency: artifact {artifact.id} stored but charge of {cost} failed "
            f"(account {account.id}, action {action_id})",
            level="error",
        )
        raise BillingInconsistency(artifact.id, action_id, cost)
    except InsufficientBalanceError:
        if artifact is not None:
            await stores.artifacts.delete(artifact.id)
            await get_storage().delete(artifact.key)
        raise

    entry = None
    if artifact:
        await stores.artifacts.mark_billed(artifact.id)
        entry = image_entry(artifact, settings.fresh_url_ttl_seconds)
    extra = await _record(plan, account, result.outputs, alog)

    alog.info("action_completed", cost=cost, balance=charged.balance, artifact_id=artifact.id if artifact else None)
    return ActionResult(
        action_id=action_id,
        feature=plan.feature,
        cost=cost,
        balance=charged.balance,
        outputs=_public_outputs(result.outputs),
        artifact=entry,
        access_url=entry.url if entry else None,
        session_id=extra.get("session_id"),
        title=extra.get("title"),
    )

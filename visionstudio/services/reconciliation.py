"""Settle artifacts that were stored but never billed (charge step failed).

The charge reuses the artifact's action id as its idempotency key, so a
charge that did commit before the failure surfaced is found, not repeated.
"""

from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from visionstudio.core.config import get_settings
from visionstudio.core.exceptions import AppError
from visionstudio.core.logging import get_logger
from visionstudio.services import ledger
from visionstudio.stores.base import get_stores

log = get_logger(__name__)


class ReconcileReport(BaseModel):
    examined: int = 0
    charged: int = 0
    already_charged: int = 0
    failed: list[str] = Field(default_factory=list)


async def reconcile_unbilled(grace_seconds: int | None = None) -> ReconcileReport:
    settings = get_settings()
    grace = settings.reconcile_grace_seconds if grace_seconds is None else grace_seconds
    cutoff = datetime.utcnow() - timedelta(seconds=grace)
    stores = get_stores()
    report = ReconcileReport()
    for artifact in await stores.artifacts.list_unbilled(cutoff):
        report.examined += 1
        try:
            result = await ledger.charge(
                artifact.account_id,
                artifact.cost,
                artifact.feature,
                idempotency_key=artifact.action_id,
                reference_id=artifact.id,
            )
        except AppError as e:
            log.error("reconcile_charge_failed", artifact_id=artifact.id, code=e.code, error=e.message)
            report.failed.append(artifact.id)
            continue
        await stores.artifacts.mark_billed(artifact.id)
        if result.duplicate:
            report.already_charged += 1
        else:
            report.charged += 1
        log.info("reconcile_artifact_billed", artifact_id=artifact.id, cost=artifact.cost, duplicate=result.duplicate)
    log.info("reconcile_done", **report.model_dump(exclude={"failed"}), failed=len(report.failed))
    return report

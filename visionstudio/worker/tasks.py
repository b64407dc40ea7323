"""Scheduled job definitions."""

import uuid
from typing import Any, Awaitable

from visionstudio.core.config import get_settings
from visionstudio.core.logging import get_logger

log = get_logger(__name__)


async def _run_recorded(job_name: str, kwargs: dict[str, Any], coro: Awaitable[Any]) -> Any:
    """Await the job; a failure is persisted as a FailedJob (Mongo backend only) and re-raised."""
    run_id = uuid.uuid4().hex
    try:
        return await coro
    except Exception as e:
        if get_settings().store_backend == "mongo":
            from visionstudio.models.failed_job import FailedJob
            await FailedJob(
                job_name=job_name,
                run_id=run_id,
                kwargs=kwargs,
                error_type=type(e).__name__,
                reason=str(e)[:2000],
            ).insert()
        log.exception("job_failed", job=job_name, run_id=run_id)
        raise


async def reconcile_unbilled(grace_seconds: int | None = None) -> None:
    """Charge artifacts whose charge step failed (idempotent per action)."""
    from visionstudio.worker.cron import run_reconcile
    await _run_recorded("reconcile_unbilled", {"grace_seconds": grace_seconds}, run_reconcile(grace_seconds))

"""Cron: reconcile unbilled artifacts, one worker at a time."""

import redis.asyncio as aioredis

from visionstudio.core.config import get_settings
from visionstudio.core.logging import get_logger
from visionstudio.services.reconciliation import reconcile_unbilled

log = get_logger(__name__)

LOCK_KEY = "visionstudio:reconcile:lock"
LOCK_TTL_SECONDS = 300


async def run_reconcile(grace_seconds: int | None = None) -> None:
    redis = aioredis.from_url(get_settings().redis_url, decode_responses=True)
    try:
        if not await redis.set(LOCK_KEY, "1", nx=True, ex=LOCK_TTL_SECONDS):
            log.info("reconcile_skipped", reason="locked")
            return
        try:
            report = await reconcile_unbilled(grace_seconds)
        finally:
            await redis.delete(LOCK_KEY)
        if report.failed:
            log.warning("reconcile_incomplete", failed=report.failed)
    finally:
        await redis.aclose()

"""Run the scheduler worker. Usage: python -m visionstudio.worker.run_worker"""

import asyncio

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from visionstudio.core.config import get_settings
from visionstudio.core.logging import configure_logging, get_logger
from visionstudio.db.init import close_db, init_db
from visionstudio.worker.tasks import reconcile_unbilled

log = get_logger(__name__)


def build_scheduler() -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        reconcile_unbilled,
        trigger=IntervalTrigger(minutes=15),
        id="reconcile_unbilled",
        name="Charge artifacts left unbilled",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


async def main():
    configure_logging(debug=get_settings().debug)
    await init_db()
    scheduler = build_scheduler()
    scheduler.start()
    log.info("worker_started", jobs=[j.id for j in scheduler.get_jobs()])
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())

# The only recurring job rebuilds the in-memory mechanic index from the
# database. It takes the live index object as an argument, so jobs stay in the
# default MemoryJobStore of this process.

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ondemand.config import settings
from ondemand.database import async_session
from ondemand.geo.index import MechanicIndex
from ondemand.metrics import MECHANIC_INDEX_SIZE, SCHEDULER_JOB_RUNS

logger = structlog.get_logger()

scheduler = AsyncIOScheduler()


async def resync_mechanic_index(index: MechanicIndex, session_factory=async_session) -> None:
    """Reload mechanic positions, availability and ratings from the database.

    Picks up writes made by other workers, which only reach this process's
    index through the database.
    """
    try:
        async with session_factory() as db:
            count = await index.load(db)
        MECHANIC_INDEX_SIZE.set(count)
        SCHEDULER_JOB_RUNS.labels(job_name="resync_mechanic_index", status="success").inc()
    except Exception:
        SCHEDULER_JOB_RUNS.labels(job_name="resync_mechanic_index", status="error").inc()
        logger.exception("resync_mechanic_index_failed")


def start_scheduler(index: MechanicIndex) -> None:
    """Start the APScheduler with the recurring index resync job."""
    scheduler.add_job(
        resync_mechanic_index,
        "interval",
        seconds=settings.INDEX_RESYNC_INTERVAL_SECONDS,
        args=[index],
        id="resync_mechanic_index",
        replace_existing=True,
        max_instances=1,
        misfire_grace_time=settings.INDEX_RESYNC_INTERVAL_SECONDS,
    )
    scheduler.start()
    logger.info("scheduler_started")


def stop_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")

from datetime import datetime

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pytz import timezone

from wxconsensus.scheduler.jobs import release_leadership, run_accuracy_update
from wxconsensus.config import get_settings

ACCURACY_JOB_ID = "accuracy-hourly"

settings = get_settings()


def _jobstores() -> dict:
    if settings.SCHEDULER_DB_URL:
        return {"default": SQLAlchemyJobStore(url=settings.SCHEDULER_DB_URL)}
    return {"default": MemoryJobStore()}


scheduler = AsyncIOScheduler(
    jobstores=_jobstores(),
    timezone=timezone(settings.SCHEDULER_TZ),
)


def configure_jobs() -> None:
    """
    Register all recurring jobs with the scheduler.

    - accuracy-hourly: lease-gated accuracy cycle, first run immediately on startup
    """
    scheduler.add_job(
        run_accuracy_update,
        "interval",
        id=ACCURACY_JOB_ID,
        minutes=settings.SCHEDULER_INTERVAL_MIN,
        next_run_time=datetime.now(timezone(settings.SCHEDULER_TZ)),
        replace_existing=True,
        misfire_grace_time=600,
        coalesce=True,
        max_instances=1,
    )


async def init_scheduler(app) -> None:
    """
    FastAPI startup hook: initialize and start the APScheduler instance
    if SCHEDULER_ENABLED is true.
    """
    if not settings.SCHEDULER_ENABLED:
        return
    configure_jobs()
    scheduler.start()


async def shutdown_scheduler() -> None:
    """
    FastAPI shutdown hook: stop the scheduler cleanly.
    """
    if scheduler.running:
        scheduler.shutdown(wait=False)
    if settings.SCHEDULER_ENABLED:
        await release_leadership()

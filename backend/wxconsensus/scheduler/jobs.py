import structlog

from wxconsensus.errors import WxConsensusError
from wxconsensus.services.accuracy import get_accuracy_service

logger = structlog.get_logger(__name__)


async def run_accuracy_update() -> None:
    """
    Hourly accuracy job.

    Every replica runs it; only the lease holder does any work. A failed cycle is
    logged here and retried from scratch on the next tick.
    """
    service = get_accuracy_service()
    try:
        result = await service.check_and_run_hourly_update()
    except WxConsensusError as exc:
        logger.exception("accuracy_job.error", error=str(exc))
        return
    if result is None:
        logger.info("accuracy_job.not_leader")
    else:
        logger.info("accuracy_job.done", ran=result.ran, seeded=result.seeded)


async def release_leadership() -> None:
    """Shutdown hook: give the lease up so another replica can take over without waiting for expiry."""
    service = get_accuracy_service()
    token = service.lease.token
    if token is not None:
        service.lease.release(token)
    await service.aclose()

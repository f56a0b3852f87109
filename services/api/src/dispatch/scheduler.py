"""APScheduler setup for the periodic self-pickup fallback sweep."""

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from models.operations.matching import matching_sweep_due_fallbacks
from utils import log

logger = log.get_logger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


async def fallback_sweep_job():
    """Switch orders nobody accepted in time to self pickup."""
    try:
        applied = await matching_sweep_due_fallbacks()
    except Exception as e:
        logger.error(f"Fallback sweep failed: {e}", exc_info=True)
        return
    if applied:
        logger.info(f"Fallback sweep switched {applied} orders to self pickup")


def init_scheduler(interval_s: int) -> AsyncIOScheduler:
    """Start the APScheduler with the fallback sweep job."""
    global _scheduler
    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        fallback_sweep_job,
        trigger=IntervalTrigger(seconds=interval_s),
        id="courier_fallback_sweep",
        name="Courier Fallback Sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info(f"APScheduler started with courier fallback sweep every {interval_s}s")
    return _scheduler


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("APScheduler shut down")

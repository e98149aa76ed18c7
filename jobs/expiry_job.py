"""
Hourly expiry job.

One AsyncIOScheduler per process, started and stopped from the FastAPI
lifespan. max_instances=1 keeps a slow sweep from overlapping the next tick.
"""
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import settings
from database import AsyncSessionLocal
from services.expiry_sweeper import ExpirySweeper
from utils.clock import get_clock

logger = logging.getLogger(__name__)

JOB_ID = "expiry_sweep"

_scheduler: Optional[AsyncIOScheduler] = None


async def run_expiry_sweep():
    """Scheduled entry point. Errors are logged so the next tick still runs."""
    sweeper = ExpirySweeper(AsyncSessionLocal, get_clock(), settings.trial_days)
    try:
        return await sweeper.sweep()
    except Exception as e:
        logger.error(f"Expiry sweep failed: {e}", exc_info=True)
        return None


def start_expiry_scheduler(interval_seconds: Optional[int] = None) -> AsyncIOScheduler:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        return _scheduler

    interval = interval_seconds or settings.sweep_interval_seconds
    _scheduler = AsyncIOScheduler(timezone="UTC")
    _scheduler.add_job(
        run_expiry_sweep,
        trigger=IntervalTrigger(seconds=interval),
        id=JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info(f"Expiry sweeper scheduled every {interval}s")
    return _scheduler


def shutdown_expiry_scheduler():
    global _scheduler
    if _scheduler is None:
        return
    if _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Expiry sweeper stopped")
    _scheduler = None

"""APScheduler setup for auction closing and bid projection repair."""

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from models.operations.auctions import auction_close_expired
from models.operations.settlement import bid_sync_all
from utils import log

logger = log.get_logger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


async def close_expired_auctions_job():
    """Close every active auction whose end time has passed."""
    try:
        counts = await auction_close_expired()
    except Exception as e:
        logger.error(f"Auction close sweep failed: {e}", exc_info=True)
        return

    if counts["closed"] or counts["failed"]:
        logger.info(f"Auction close sweep: {counts}")


async def bid_sync_job():
    """Re-project bid documents from auction ledgers."""
    try:
        totals = await bid_sync_all()
    except Exception as e:
        logger.error(f"Bid sync job failed: {e}", exc_info=True)
        return

    logger.info(f"Bid sync job finished: {totals}")


def init_scheduler(close_interval_seconds: int = 60, bid_sync_interval_seconds: int = 300) -> AsyncIOScheduler:
    """Start the APScheduler with the auction close sweep and bid sync jobs."""
    global _scheduler
    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        close_expired_auctions_job,
        trigger=IntervalTrigger(seconds=close_interval_seconds),
        id="auction_close_sweep",
        name="Close Expired Auctions",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.add_job(
        bid_sync_job,
        trigger=IntervalTrigger(seconds=bid_sync_interval_seconds),
        id="bid_projection_sync",
        name="Bid Projection Sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info(
        f"APScheduler started: close sweep every {close_interval_seconds}s, "
        f"bid sync every {bid_sync_interval_seconds}s"
    )
    return _scheduler


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("APScheduler shut down")

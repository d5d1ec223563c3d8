# mypy: ignore-errors
from datetime import timedelta

import pytest

from jobs import scheduler
from models.entities.couchbase.auctions import Auction


@pytest.mark.asyncio
async def test_close_job_closes_expired_auctions(stored_auction_factory) -> None:
    expired = await stored_auction_factory(ends_in=timedelta(seconds=-1))

    await scheduler.close_expired_auctions_job()

    assert (await Auction.get(expired.id)).data.status == "ended"


@pytest.mark.asyncio
async def test_jobs_swallow_failures(monkeypatch) -> None:
    async def boom(*args, **kwargs):
        raise RuntimeError("store down")

    monkeypatch.setattr(scheduler, "auction_close_expired", boom)
    monkeypatch.setattr(scheduler, "bid_sync_all", boom)

    await scheduler.close_expired_auctions_job()
    await scheduler.bid_sync_job()


@pytest.mark.asyncio
async def test_scheduler_registers_both_jobs() -> None:
    sched = scheduler.init_scheduler(close_interval_seconds=5, bid_sync_interval_seconds=7)
    try:
        ids = {job.id for job in sched.get_jobs()}
        assert ids == {"auction_close_sweep", "bid_projection_sync"}
    finally:
        scheduler.shutdown_scheduler()

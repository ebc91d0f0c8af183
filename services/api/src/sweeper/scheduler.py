"""APScheduler setup for the auction sweeper: activation, closure, order retry and archival."""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

import conf
from models.operations.auctions import (
    auction_activate,
    auction_archive_expired,
    auction_close,
    auction_find_due_for_activation,
    auction_find_due_for_closure,
    auction_find_pending_orders,
    auction_retry_order,
)
from realtime import get_gateway
from utils import log

logger = log.get_logger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


async def sweep_auctions(now: Optional[datetime] = None) -> dict:
    """Activate scheduled auctions that are due, then close the ones whose clock has run out."""
    now = now or datetime.now(timezone.utc)
    gateway = get_gateway()
    counts = {"activated": 0, "closed": 0, "failed": 0}

    try:
        due_to_start = await auction_find_due_for_activation(now)
    except Exception as e:
        logger.error(f"Failed to query auctions due for activation: {e}")
        due_to_start = []

    for auction in due_to_start:
        try:
            result = await auction_activate(auction.id, now)
            if result.changed:
                counts["activated"] += 1
                gateway.broadcast_all(result.events)
        except Exception as e:
            counts["failed"] += 1
            logger.error(f"Activation failed for auction {auction.id}: {e}", exc_info=True)

    try:
        due_to_close = await auction_find_due_for_closure(now)
    except Exception as e:
        logger.error(f"Failed to query auctions due for closure: {e}")
        due_to_close = []

    for auction in due_to_close:
        try:
            result = await auction_close(auction.id, now)
            if result.changed:
                counts["closed"] += 1
                gateway.broadcast_all(result.events)
            else:
                logger.debug(f"Auction {auction.id} not closed: {result.reason}")
        except Exception as e:
            counts["failed"] += 1
            logger.error(f"Closure failed for auction {auction.id}: {e}", exc_info=True)

    if any(counts.values()):
        logger.info(f"Auction sweep: {counts['activated']} activated, {counts['closed']} closed, {counts['failed']} failed")
    return counts


async def retry_orders(now: Optional[datetime] = None) -> int:
    """Retry order creation for sold auctions whose hand-off failed or stalled."""
    now = now or datetime.now(timezone.utc)
    grace = conf.get_sweeper_conf().order_retry_grace_seconds
    try:
        pending = await auction_find_pending_orders(now, grace_seconds=grace)
    except Exception as e:
        logger.error(f"Failed to query auctions with pending orders: {e}")
        return 0

    created = 0
    for auction in pending:
        try:
            result = await auction_retry_order(auction.id)
            if result.changed:
                created += 1
                get_gateway().broadcast_all(result.events)
            else:
                logger.warning(
                    f"Order still missing for auction {auction.id} "
                    f"(attempts: {result.auction.data.order_attempts}): {result.reason}"
                )
        except Exception as e:
            logger.error(f"Order retry failed for auction {auction.id}: {e}", exc_info=True)
    return created


async def archive_auctions(now: Optional[datetime] = None) -> int:
    """Daily archival of terminal auctions past the retention window."""
    retention_days = conf.get_sweeper_conf().archive_retention_days
    try:
        archived = await auction_archive_expired(now, retention_days=retention_days)
    except Exception as e:
        logger.error(f"Auction archival job failed: {e}", exc_info=True)
        return 0
    logger.info(f"Archived {archived} auctions older than {retention_days} days")
    return archived


def init_scheduler() -> AsyncIOScheduler:
    """Start the APScheduler with the sweep, order-retry and archival jobs."""
    global _scheduler
    sweeper_conf = conf.get_sweeper_conf()
    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        sweep_auctions,
        trigger=IntervalTrigger(seconds=sweeper_conf.sweep_interval_seconds),
        id="auction_sweep",
        name="Auction Activation/Closure Sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.add_job(
        retry_orders,
        trigger=IntervalTrigger(seconds=sweeper_conf.order_retry_interval_seconds),
        id="auction_order_retry",
        name="Auction Order Retry",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.add_job(
        archive_auctions,
        trigger=CronTrigger(hour=sweeper_conf.archive_hour_utc, minute=0, timezone=ZoneInfo("UTC")),
        id="auction_archive",
        name="Daily Auction Archival",
        replace_existing=True,
    )
    _scheduler.start()
    logger.info(
        f"APScheduler started: sweep every {sweeper_conf.sweep_interval_seconds}s, "
        f"order retry every {sweeper_conf.order_retry_interval_seconds}s, "
        f"archival daily at {sweeper_conf.archive_hour_utc:02d}:00 UTC"
    )
    return _scheduler


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("APScheduler shut down")

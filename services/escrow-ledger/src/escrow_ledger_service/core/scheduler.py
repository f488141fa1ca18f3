"""Background scheduling of the settlement sweeps."""

from __future__ import annotations

from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from starlette.concurrency import run_in_threadpool

from escrow_ledger_service.logging import get_logger

if TYPE_CHECKING:
    from escrow_ledger_service.config import SchedulerConfig
    from escrow_ledger_service.services.settlement import SettlementScheduler

logger = get_logger(__name__)


async def run_auto_release_job(settlement: SettlementScheduler) -> None:
    """Scheduled auto-release sweep."""
    try:
        await run_in_threadpool(settlement.run_auto_release_sweep)
    except Exception:
        logger.exception("Auto-release job failed")


async def run_expiry_job(settlement: SettlementScheduler) -> None:
    """Scheduled expiry sweep."""
    try:
        await settlement.run_expiry_sweep()
    except Exception:
        logger.exception("Expiry job failed")


def start_scheduler(settlement: SettlementScheduler, config: SchedulerConfig) -> AsyncIOScheduler:
    """
    Register both sweeps as interval jobs and start the scheduler.

    Must be called from inside the running event loop (the app lifespan).
    """
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_auto_release_job,
        trigger=IntervalTrigger(seconds=config.auto_release_interval_seconds),
        args=[settlement],
        id="auto_release",
        name="Auto-release stale held charges",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    scheduler.add_job(
        run_expiry_job,
        trigger=IntervalTrigger(seconds=config.expiry_interval_seconds),
        args=[settlement],
        id="task_expiry",
        name="Expire unaccepted tasks",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    scheduler.start()
    logger.info(
        "Scheduler started",
        extra={
            "auto_release_interval_seconds": config.auto_release_interval_seconds,
            "expiry_interval_seconds": config.expiry_interval_seconds,
        },
    )
    return scheduler

"""Reminder tick runner.

One APScheduler interval job walks every open escalation. The job never
overlaps itself in a process; workers on other hosts are reconciled by
the progress version check in the escalation engine.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from alerting.config import settings
from alerting.database import get_db_session
from alerting.logging_config import get_logger, setup_logging
from alerting.providers.base import ProviderRegistry
from alerting.services.incident_alerts import process_pending_reminders

logger = get_logger(__name__)

ESCALATION_JOB_ID = "escalation_check"

scheduler: AsyncIOScheduler | None = None
_providers: ProviderRegistry | None = None


async def check_pending_escalations() -> None:
    """Tick every open escalation once, in a fresh session.

    Failures are logged and swallowed so the next interval still fires.
    """
    if _providers is None:
        logger.warning("Escalation check skipped, no providers configured")
        return

    try:
        async with get_db_session() as db:
            ticked = await process_pending_reminders(db, _providers)
    except Exception as e:
        logger.error("Escalation check failed", error=str(e))
        return

    logger.info("Escalation check finished", escalations_ticked=ticked)


def start_scheduler(providers: ProviderRegistry) -> AsyncIOScheduler:
    """Start the runner, registering the tick unless it is disabled.

    Calling it again while running returns the running instance.
    """
    global scheduler, _providers

    if scheduler is not None:
        logger.warning("Reminder runner already started")
        return scheduler

    _providers = providers
    runner = AsyncIOScheduler()

    interval = settings.escalation_check_interval_minutes
    if settings.escalation_check_enabled:
        runner.add_job(
            check_pending_escalations,
            IntervalTrigger(minutes=interval),
            id=ESCALATION_JOB_ID,
            name="On-call escalation tick",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    runner.start()
    scheduler = runner
    logger.info(
        "Reminder runner started",
        tick_enabled=settings.escalation_check_enabled,
        interval_minutes=interval,
    )
    return scheduler


def stop_scheduler() -> None:
    global scheduler, _providers

    if scheduler is None:
        return
    scheduler.shutdown(wait=False)
    scheduler = None
    _providers = None
    logger.info("Reminder runner stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    return scheduler


@asynccontextmanager
async def scheduler_lifespan(providers: ProviderRegistry) -> AsyncGenerator[None, None]:
    """Configure logging, run the reminder job for the block, then stop it."""
    setup_logging()
    start_scheduler(providers)
    try:
        yield
    finally:
        stop_scheduler()

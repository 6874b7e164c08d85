"""Background refresh scheduler using APScheduler."""

import logging
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import settings
from services.run_coordinator import RunCoordinator

logger = logging.getLogger(__name__)

REFRESH_JOB_ID = "run_all_connectors"


async def scheduled_run_all(coordinator: RunCoordinator) -> dict[str, Any]:
    """Run every connector once.

    Connectors still busy from a previous or manual run report
    ``already_running`` and are left alone.

    Returns:
        Dict with run statistics.
    """
    logger.info("Starting scheduled refresh of all connectors")
    results = await coordinator.run_all()

    succeeded = sum(1 for r in results.values() if r.succeeded)
    processed = sum(r.processed for r in results.values())
    logger.info(
        f"Scheduled refresh complete: {succeeded}/{len(results)} connectors succeeded, "
        f"{processed} new items"
    )
    return {
        "connectors": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "items_collected": processed,
    }


def start_scheduler(
    coordinator: RunCoordinator,
    interval_minutes: int | None = None,
) -> AsyncIOScheduler:
    """Create and start the background scheduler. Must be called inside a running loop."""
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        scheduled_run_all,
        trigger=IntervalTrigger(minutes=interval_minutes or settings.fetch_interval_minutes),
        args=[coordinator],
        id=REFRESH_JOB_ID,
        name="Refresh all connectors",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Scheduler started")
    return scheduler


def stop_scheduler(scheduler: AsyncIOScheduler) -> None:
    """Stop the background scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")


def get_job_status(scheduler: AsyncIOScheduler | None) -> list[dict]:
    """Get status of all scheduled jobs."""
    if scheduler is None:
        return []
    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger),
        })
    return jobs

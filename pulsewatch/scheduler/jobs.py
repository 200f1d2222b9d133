"""Pulsewatch — Scheduler Jobs.

APScheduler interval jobs: the reaper sweep and the schedule runner.
"""

import asyncio

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session

from pulsewatch.config import settings
from pulsewatch.connectors.worker.client import HttpWorkerInvoker
from pulsewatch.database import engine
from pulsewatch.orchestrator.projects import run_due_schedules
from pulsewatch.orchestrator.reaper import reap_stalled_pulses, repair_unfinalized_pulses
from pulsewatch.orchestrator.trigger import dispatch_and_close
from pulsewatch.core.logging import get_logger

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler()


def reaper_job():
    """Expire stalled pulses and finalize completed ones left without a Statistic.

    Runs in the scheduler's thread pool.
    """
    try:
        with Session(engine) as session:
            expired = reap_stalled_pulses(session)
            repaired = repair_unfinalized_pulses(session)
        if expired or repaired:
            logger.info(
                f"Reaper expired {len(expired)} pulses, repaired {len(repaired)}"
            )
    except Exception as e:
        logger.error(f"Reaper sweep failed: {e}")


async def schedule_job(invoker_factory=HttpWorkerInvoker):
    """Start a pulse for every due schedule, then dispatch them on the event loop."""
    try:
        with Session(engine) as session:
            jobs = run_due_schedules(session)
    except Exception as e:
        logger.error(f"Schedule runner failed: {e}")
        return

    await asyncio.gather(*(dispatch_and_close(job, invoker_factory()) for job in jobs))


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler.add_job(
        reaper_job,
        "interval",
        seconds=settings.reaper_interval_seconds,
        id="pulse_reaper",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        schedule_job,
        "interval",
        seconds=settings.schedule_interval_seconds,
        id="schedule_runner",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(
        f"Scheduler started. Reaper every {settings.reaper_interval_seconds}s, "
        f"timeout {settings.pulse_timeout_seconds}s"
    )


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

"""Background scheduler for periodic calibration."""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from moodscope.config import settings
from moodscope.jobs.calibration_job import run_calibration_cycle
from moodscope.log_config import logger
from moodscope.utils.errors import MoodScopeError

CALIBRATION_JOB_ID = "calibration_cycle"

scheduler = AsyncIOScheduler()


def run_scheduled_calibration() -> None:
    """Scheduler entry point. Domain failures are logged and retried next interval."""
    try:
        run_calibration_cycle()
    except MoodScopeError as e:
        logger.error(f"Scheduled calibration failed: {e.message}")


def register_jobs(target: AsyncIOScheduler) -> None:
    target.add_job(
        run_scheduled_calibration,
        trigger=IntervalTrigger(minutes=settings.calibration_interval_minutes),
        id=CALIBRATION_JOB_ID,
        name="Mood Scoring Calibration",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )


def start_scheduler() -> None:
    """Register jobs and start the scheduler."""
    register_jobs(scheduler)
    scheduler.start()
    logger.info(
        f"Calibration job scheduled every {settings.calibration_interval_minutes} minutes"
    )


def stop_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")

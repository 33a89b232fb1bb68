"""
Scheduled jobs worker.
Runs the appointment reminder sweep every hour.
"""

import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from worker.config import settings
from worker.jobs.reminder_job import send_appointment_reminders

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_scheduler() -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=settings.GARAGE_TIMEZONE)

    # Schedule appointment reminder job
    scheduler.add_job(
        send_appointment_reminders,
        trigger=CronTrigger.from_crontab(settings.REMINDER_CRON_SCHEDULE, timezone=settings.GARAGE_TIMEZONE),
        id="appointment_reminders",
        name="Send appointment reminders",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=settings.SCHEDULER_MISFIRE_GRACE_SECONDS,
    )
    return scheduler


async def main():
    """Initialize and run the worker scheduler."""
    logger.info("Starting reminder worker...")

    scheduler = create_scheduler()

    # Start scheduler
    scheduler.start()
    logger.info(f"Scheduler started. Jobs: {[job.id for job in scheduler.get_jobs()]}")

    if settings.RUN_REMINDERS_ON_STARTUP:
        await send_appointment_reminders()

    # Keep the worker running
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        logger.info("Shutting down worker...")
        scheduler.shutdown()


if __name__ == "__main__":
    asyncio.run(main())

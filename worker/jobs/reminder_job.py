"""Appointment reminder job."""

import logging
from datetime import datetime
from typing import Optional

from garage.bootstrap import Services, build_services, close_services, create_database
from garage.config import Settings
from garage.services.redis_client import create_redis
from garage.services.reminder_scheduler import SweepReport

from worker.config import settings as worker_settings

logger = logging.getLogger(__name__)


async def send_appointment_reminders(
    now: Optional[datetime] = None,
    services: Optional[Services] = None,
    settings: Optional[Settings] = None,
) -> Optional[SweepReport]:
    """
    Remind customers whose appointment is about 24 hours away.

    Builds its own store handle and gateway unless ``services`` is given, and
    releases what it built. Errors are logged, never raised, so the scheduler
    keeps its hourly cadence; the next run picks up whatever was missed.
    """
    logger.info("Running appointment reminder job...")
    settings = settings or worker_settings

    owned = None
    try:
        if services is None:
            database = create_database(settings)
            redis_client = await create_redis(settings.REDIS_URL)
            owned = services = build_services(settings, database, redis_client=redis_client)

        report = await services.reminders.run_reminder_sweep(now)

    except Exception as e:
        logger.error(f"Error in reminder job: {e}", exc_info=True)
        return None
    finally:
        if owned is not None:
            await close_services(owned)

    logger.info(
        f"Appointment reminder job completed: {report.sent} sent, {report.failed} failed, "
        f"{report.selected} selected"
    )
    return report

"""Builds the service graph shared by the API and the worker."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from garage.config import Settings
from garage.models.base import utcnow
from garage.services.appointment_service import AppointmentService
from garage.services.database import Database
from garage.services.loyalty_ledger import LoyaltyLedger
from garage.services.modification_guard import ModificationGuard
from garage.services.notification_gateway import NotificationGateway, NotificationService, build_gateway
from garage.services.redis_client import close_redis
from garage.services.reminder_scheduler import ReminderScheduler
from garage.services.slot_ledger import SlotLedger
from garage.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    database: Database
    users: UserDirectory
    slots: SlotLedger
    guard: ModificationGuard
    loyalty: LoyaltyLedger
    notifications: NotificationService
    appointments: AppointmentService
    reminders: ReminderScheduler
    redis_client: Optional[object] = None


def create_database(settings: Settings) -> Database:
    return Database(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        max_retries=settings.STORE_MAX_RETRIES,
        retry_initial_delay=settings.STORE_RETRY_INITIAL_DELAY,
    )


def build_services(
    settings: Settings,
    database: Database,
    gateway: Optional[NotificationGateway] = None,
    redis_client=None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    users = UserDirectory(database)
    slots = SlotLedger(database, settings.GARAGE_TIMEZONE, settings.SLOT_TIMES)
    guard = ModificationGuard(users, window_hours=settings.MODIFICATION_WINDOW_HOURS, clock=clock)
    loyalty = LoyaltyLedger(
        database,
        users,
        points_per_appointment=settings.LOYALTY_POINTS_PER_APPOINTMENT,
        welcome_bonus_points=settings.LOYALTY_WELCOME_BONUS,
    )
    notifications = NotificationService(
        gateway if gateway is not None else build_gateway(settings),
        users,
        timezone_name=settings.GARAGE_TIMEZONE,
    )
    appointments = AppointmentService(database, slots, guard, loyalty, users, clock=clock)
    reminders = ReminderScheduler(
        database,
        notifications,
        lead_hours=settings.REMINDER_LEAD_HOURS,
        window_minutes=settings.REMINDER_WINDOW_MINUTES,
        concurrency=settings.REMINDER_CONCURRENCY,
        item_timeout=settings.REMINDER_ITEM_TIMEOUT_SECONDS,
        sweep_budget=settings.REMINDER_SWEEP_BUDGET_SECONDS,
        timezone_name=settings.GARAGE_TIMEZONE,
        redis_client=redis_client,
        clock=clock,
    )

    return Services(
        settings=settings,
        database=database,
        users=users,
        slots=slots,
        guard=guard,
        loyalty=loyalty,
        notifications=notifications,
        appointments=appointments,
        reminders=reminders,
        redis_client=redis_client,
    )


async def close_services(services: Services) -> None:
    """Wait for background cleanups, then release connections."""
    await services.notifications.drain()
    await close_redis(services.redis_client)
    await services.database.dispose()
    logger.info("Services shut down")

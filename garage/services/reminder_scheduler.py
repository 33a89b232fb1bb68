"""
Appointment reminder sweep.

Run hourly. Each run selects confirmed appointments scheduled within
``lead ± window`` of now (24h ± 30min by default) whose reminder has not been
sent, and sends one reminder per appointment. ``reminder_sent`` is set only
after a successful send, with a conditional update, so:

- a failed send is retried by the next run (the window overlaps consecutive runs)
- a sent reminder is never sent again, however many times the sweep runs

Appointments are processed concurrently (bounded by a semaphore), each with its
own timeout; one failure never stops the others.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from garage.exceptions import GatewayDeliveryError
from garage.models.appointment import Appointment, AppointmentStatus
from garage.models.base import utcnow
from garage.models.user import User
from garage.services.database import Database
from garage.services.messages import reminder_message
from garage.services.notification_gateway import NotificationService
from garage.services.redis_client import LOCK_PREFIX
from redis.exceptions import LockError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = f"{LOCK_PREFIX}reminder-sweep"


class ReminderOutcome(str, enum.Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ALREADY_SENT = "already_sent"


@dataclass
class SweepReport:
    started_at: datetime
    window_start: datetime
    window_end: datetime
    selected: int = 0
    outcomes: Dict[int, ReminderOutcome] = field(default_factory=dict)
    skipped_locked: bool = False

    def count(self, outcome: ReminderOutcome) -> int:
        return sum(1 for value in self.outcomes.values() if value == outcome)

    @property
    def sent(self) -> int:
        return self.count(ReminderOutcome.SENT)

    @property
    def failed(self) -> int:
        return self.count(ReminderOutcome.FAILED) + self.count(ReminderOutcome.TIMED_OUT)

    def as_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "selected": self.selected,
            "sent": self.sent,
            "skipped": self.count(ReminderOutcome.SKIPPED),
            "already_sent": self.count(ReminderOutcome.ALREADY_SENT),
            "failed": self.count(ReminderOutcome.FAILED),
            "timed_out": self.count(ReminderOutcome.TIMED_OUT),
            "skipped_locked": self.skipped_locked,
        }


class ReminderScheduler:
    """Finds appointments entering the reminder window and reminds each exactly once."""

    def __init__(
        self,
        database: Database,
        notifications: NotificationService,
        lead_hours: int = 24,
        window_minutes: int = 30,
        concurrency: int = 10,
        item_timeout: float = 10.0,
        sweep_budget: float = 300.0,
        timezone_name: str = "Europe/Paris",
        redis_client=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.notifications = notifications
        self.lead = timedelta(hours=lead_hours)
        self.window = timedelta(minutes=window_minutes)
        self.concurrency = max(1, concurrency)
        self.item_timeout = item_timeout
        self.sweep_budget = sweep_budget
        self.timezone = ZoneInfo(timezone_name)
        self.redis_client = redis_client
        self.clock = clock
        self._local_lock = asyncio.Lock()

    def reminder_window(self, now: datetime):
        target = now + self.lead
        return target - self.window, target + self.window

    async def find_due(self, now: datetime) -> List[Appointment]:
        """Confirmed, not yet reminded appointments inside the window (bounds inclusive)."""
        window_start, window_end = self.reminder_window(now)
        async with self.database.session_maker() as session:
            result = await session.execute(
                select(Appointment)
                .where(
                    Appointment.status == AppointmentStatus.CONFIRMED,
                    Appointment.scheduled_at >= window_start,
                    Appointment.scheduled_at <= window_end,
                    Appointment.reminder_sent.is_(False),
                )
                .order_by(Appointment.scheduled_at.asc())
            )
            return list(result.scalars().all())

    async def run_reminder_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """One sweep. Safe to call any number of times; overlapping calls are serialized."""
        now = now or self.clock()
        window_start, window_end = self.reminder_window(now)
        report = SweepReport(started_at=now, window_start=window_start, window_end=window_end)

        if self._local_lock.locked():
            logger.info("Reminder sweep already running in this process, skipping")
            report.skipped_locked = True
            return report

        async with self._local_lock:
            distributed_lock = None
            if self.redis_client is not None:
                distributed_lock = self.redis_client.lock(
                    SWEEP_LOCK_KEY, timeout=int(self.sweep_budget) + 60, blocking=False
                )
                if not await distributed_lock.acquire():
                    logger.info("Reminder sweep already running elsewhere, skipping")
                    report.skipped_locked = True
                    return report

            try:
                await self._sweep(now, report)
            finally:
                if distributed_lock is not None:
                    try:
                        await distributed_lock.release()
                    except LockError as e:
                        # Expires on its own after the timeout
                        logger.warning(f"Failed to release lock {SWEEP_LOCK_KEY}: {e}")

        logger.info(f"Reminder sweep finished: {report.as_dict()}")
        return report

    async def _sweep(self, now: datetime, report: SweepReport) -> None:
        logger.info(
            f"Running appointment reminder check for {report.window_start.isoformat()} - "
            f"{report.window_end.isoformat()}"
        )
        appointments = await self.find_due(now)
        report.selected = len(appointments)

        if not appointments:
            logger.info("No appointments found needing reminders")
            return

        logger.info(f"Found {len(appointments)} appointments to remind")
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _guarded(appointment: Appointment) -> None:
            async with semaphore:
                try:
                    outcome = await asyncio.wait_for(
                        self.remind(appointment, now), timeout=self.item_timeout
                    )
                except asyncio.TimeoutError:
                    logger.error(f"Reminder for appointment {appointment.id} timed out")
                    outcome = ReminderOutcome.TIMED_OUT
                except GatewayDeliveryError as e:
                    logger.warning(
                        f"Reminder for appointment {appointment.id} not delivered: {e.reason_code} {e.message}"
                    )
                    outcome = ReminderOutcome.FAILED
                except Exception as e:
                    logger.error(
                        f"Failed to send reminder for appointment {appointment.id}: {e}",
                        exc_info=True,
                    )
                    outcome = ReminderOutcome.FAILED
                report.outcomes[appointment.id] = outcome

        tasks = [asyncio.create_task(_guarded(appointment)) for appointment in appointments]
        done, pending = await asyncio.wait(tasks, timeout=self.sweep_budget)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Reminder sweep budget exhausted, {len(pending)} appointments left for next run")
            for appointment in appointments:
                report.outcomes.setdefault(appointment.id, ReminderOutcome.TIMED_OUT)

    async def remind(self, appointment: Appointment, now: datetime) -> ReminderOutcome:
        """Send the reminder for one appointment and record it.

        Raises GatewayDeliveryError when the gateway refuses the message.
        """
        window_start, window_end = self.reminder_window(now)
        async with self.database.session_maker() as session:
            current = await session.get(Appointment, appointment.id)
            user = await session.get(User, appointment.user_id)

        # The row may have changed since the sweep selected it
        if current is None or current.status != AppointmentStatus.CONFIRMED:
            logger.info(f"Appointment {appointment.id} is no longer confirmed")
            return ReminderOutcome.SKIPPED
        if current.reminder_sent:
            return ReminderOutcome.ALREADY_SENT
        if not window_start <= current.scheduled_at <= window_end:
            logger.info(f"Appointment {appointment.id} moved out of the reminder window")
            return ReminderOutcome.SKIPPED
        appointment = current

        if user is None:
            logger.error(f"User {appointment.user_id} not found")
            return ReminderOutcome.SKIPPED

        if not user.notify_appointment_reminders:
            logger.info(f"User {user.id} has disabled appointment reminders")
            return ReminderOutcome.SKIPPED

        if not user.phone_number:
            logger.info(f"User {user.id} has no delivery address")
            return ReminderOutcome.SKIPPED

        title, body, metadata = reminder_message(appointment, self.timezone)
        result = await self.notifications.send_one(user.id, user.phone_number, title, body, metadata)

        if not result.success:
            raise GatewayDeliveryError(result.reason, address=result.address, reason_code=result.error_code)

        # The flag only ever goes false -> true, and only after a successful send
        marked = await self.database.run_in_transaction(
            lambda session: self._mark_sent(session, appointment.id, now),
            operation_name="Mark reminder sent",
        )
        if not marked:
            logger.warning(f"Reminder flag for appointment {appointment.id} was already set")
            return ReminderOutcome.ALREADY_SENT

        logger.info(f"Reminder sent for appointment {appointment.id}")
        return ReminderOutcome.SENT

    async def _mark_sent(self, session: AsyncSession, appointment_id: int, now: datetime) -> bool:
        result = await session.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment_id,
                Appointment.status == AppointmentStatus.CONFIRMED,
                Appointment.reminder_sent.is_(False),
            )
            .values(reminder_sent=True, reminder_sent_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

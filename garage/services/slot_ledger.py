"""
Slot ledger.

A slot is a single instant. At most one *confirmed* appointment may occupy it.
``claim`` is the check half of check-then-insert and must run inside the same
transaction as the insert/update that takes the slot; the partial unique index
``uq_appointments_confirmed_slot`` catches anything that slips past it.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo

from garage.exceptions import SlotTakenError
from garage.models.appointment import Appointment, AppointmentStatus
from garage.services.database import Database
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class SlotLedger:
    """Maps instants to the confirmed appointment holding them."""

    def __init__(self, database: Database, timezone_name: str, slot_times: Sequence[str]):
        self.database = database
        self.timezone = ZoneInfo(timezone_name)
        self.slot_times = [time.fromisoformat(value) for value in slot_times]

    async def holder(
        self, session: AsyncSession, when: datetime, exclude_id: Optional[int] = None
    ) -> Optional[Appointment]:
        """The confirmed appointment at exactly ``when``, if any."""
        stmt = select(Appointment).where(
            Appointment.scheduled_at == when,
            Appointment.status == AppointmentStatus.CONFIRMED,
        )
        if exclude_id is not None:
            stmt = stmt.where(Appointment.id != exclude_id)
        result = await session.execute(stmt.limit(1))
        return result.scalars().first()

    async def claim(self, session: AsyncSession, when: datetime, exclude_id: Optional[int] = None) -> None:
        """Raise SlotTakenError when ``when`` is already held by another confirmed appointment."""
        taken_by = await self.holder(session, when, exclude_id=exclude_id)
        if taken_by is not None:
            logger.info(f"Slot {when.isoformat()} already held by appointment {taken_by.id}")
            raise SlotTakenError(scheduled_at=when.isoformat())

    def slots_for_day(self, day: date) -> List[datetime]:
        """Every bookable instant of ``day`` in the garage's timezone."""
        return [datetime.combine(day, slot, tzinfo=self.timezone) for slot in self.slot_times]

    async def available_slots(self, day: date, now: Optional[datetime] = None) -> List[datetime]:
        """Grid slots of ``day`` that are not held and, when ``now`` is given, still in the future."""
        candidates = self.slots_for_day(day)
        start_of_day = datetime.combine(day, time.min, tzinfo=self.timezone)
        end_of_day = start_of_day + timedelta(days=1)

        async with self.database.session_maker() as session:
            result = await session.execute(
                select(Appointment.scheduled_at).where(
                    Appointment.scheduled_at >= start_of_day,
                    Appointment.scheduled_at < end_of_day,
                    Appointment.status == AppointmentStatus.CONFIRMED,
                )
            )
            booked = set(result.scalars().all())

        return [
            slot
            for slot in candidates
            if slot not in booked and (now is None or slot > now)
        ]

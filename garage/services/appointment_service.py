"""
Appointment store and request entry points.

- ``book``: slot check and insert in one transaction (SlotTakenError on conflict)
- ``request_modification`` / ``request_cancellation`` / ``delete``: gated by the
  modification guard inside the writing transaction
- ``complete``: always allowed; credits loyalty points afterwards, and a credit
  failure is reported without undoing the completion
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from garage.exceptions import (
    AppointmentNotFoundError,
    PermissionDeniedError,
    SlotTakenError,
    ValidationError,
)
from garage.models.appointment import (
    TERMINAL_STATUSES,
    Appointment,
    AppointmentStatus,
    ServiceType,
)
from garage.models.base import utcnow
from garage.models.loyalty import LoyaltyTransaction
from garage.services.database import Database
from garage.services.loyalty_ledger import LoyaltyLedger
from garage.services.modification_guard import ModificationGuard, is_outside_protected_window
from garage.services.slot_ledger import SlotLedger
from garage.services.user_directory import UserDirectory
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# French labels used by the web client map onto the same closed set
SERVICE_TYPE_ALIASES = {
    "entretien": ServiceType.MAINTENANCE,
    "reparation": ServiceType.REPAIR,
    "réparation": ServiceType.REPAIR,
    "reprogrammation": ServiceType.REPROGRAMMING,
}


@dataclass
class VehicleInfo:
    make: str
    model: str
    plate: str


@dataclass
class AppointmentChanges:
    """Fields a caller may ask to change. None means "leave as is"."""

    scheduled_at: Optional[datetime] = None
    service_type: Optional[Union[ServiceType, str]] = None
    customer_notes: Optional[str] = None
    vehicle: Optional[VehicleInfo] = None

    def is_empty(self) -> bool:
        return (
            self.scheduled_at is None
            and self.service_type is None
            and self.customer_notes is None
            and self.vehicle is None
        )


@dataclass
class CompletionResult:
    appointment: Appointment
    loyalty_transaction: Optional[LoyaltyTransaction] = None
    loyalty_error: Optional[str] = None

    @property
    def loyalty_credited(self) -> bool:
        return self.loyalty_transaction is not None


def parse_service_type(value: Union[ServiceType, str]) -> ServiceType:
    if isinstance(value, ServiceType):
        return value
    normalized = str(value).strip().lower()
    if normalized in SERVICE_TYPE_ALIASES:
        return SERVICE_TYPE_ALIASES[normalized]
    try:
        return ServiceType(normalized)
    except ValueError:
        valid_types = ", ".join(t.value for t in ServiceType)
        raise ValidationError(f"Type de service invalide. Valeurs possibles : {valid_types}")


def _is_slot_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc)
    return "uq_appointments_confirmed_slot" in message or "appointments.scheduled_at" in message


class AppointmentService:
    """Authoritative store of appointments and their lifecycle."""

    def __init__(
        self,
        database: Database,
        slots: SlotLedger,
        guard: ModificationGuard,
        loyalty: LoyaltyLedger,
        users: UserDirectory,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.slots = slots
        self.guard = guard
        self.loyalty = loyalty
        self.users = users
        self.clock = clock

    def _validate_instant(self, when: datetime, now: datetime) -> None:
        if when.tzinfo is None or when.utcoffset() is None:
            raise ValidationError("La date du rendez-vous doit comporter un fuseau horaire")
        if when <= now:
            raise ValidationError("La date du rendez-vous doit être dans le futur")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, appointment_id: int) -> Appointment:
        async with self.database.session_maker() as session:
            appointment = await session.get(Appointment, appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id=appointment_id)
        return appointment

    async def list_for_user(self, user_id: int) -> List[Appointment]:
        async with self.database.session_maker() as session:
            result = await session.execute(
                select(Appointment)
                .where(Appointment.user_id == user_id)
                .order_by(Appointment.scheduled_at.desc())
            )
            return list(result.scalars().all())

    async def list_all(self) -> List[Appointment]:
        async with self.database.session_maker() as session:
            result = await session.execute(select(Appointment).order_by(Appointment.scheduled_at.asc()))
            return list(result.scalars().all())

    async def can_modify(
        self, appointment_id: int, acting_user_id: int, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Pre-flight check for clients: would a change by this user be allowed right now?"""
        now = now or self.clock()
        appointment = await self.get(appointment_id)
        user = await self.users.get_user(acting_user_id)

        if not user.is_privileged and appointment.user_id != user.id:
            raise PermissionDeniedError(appointment_id=appointment_id, user_id=acting_user_id)

        allowed = user.is_privileged or is_outside_protected_window(
            appointment.scheduled_at, now, self.guard.window
        )
        return {
            "can_modify": allowed,
            "message": (
                "Vous pouvez modifier ce rendez-vous"
                if allowed
                else "Impossible de modifier ce rendez-vous dans les 24 heures précédant l'heure prévue"
            ),
            "scheduled_at": appointment.scheduled_at,
        }

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def book(
        self,
        user_id: int,
        customer_name: str,
        service_type: Union[ServiceType, str],
        when: datetime,
        vehicle: VehicleInfo,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Appointment:
        """Create a confirmed appointment, or raise SlotTakenError if ``when`` is held."""
        service = parse_service_type(service_type)
        self._validate_instant(when, now or self.clock())
        if not customer_name or not customer_name.strip():
            raise ValidationError("Le nom du client est requis")

        async def _book(session: AsyncSession) -> Appointment:
            await self.users.get_user(user_id, session=session)
            await self.slots.claim(session, when)

            appointment = Appointment(
                user_id=user_id,
                customer_name=customer_name.strip(),
                service_type=service,
                scheduled_at=when,
                vehicle_make=vehicle.make,
                vehicle_model=vehicle.model,
                vehicle_plate=vehicle.plate,
                customer_notes=notes or "",
                status=AppointmentStatus.CONFIRMED,
                reminder_sent=False,
            )
            session.add(appointment)
            await session.flush()
            return appointment

        try:
            appointment = await self.database.run_in_transaction(
                _book, operation_name="Book appointment", serializable=True
            )
        except IntegrityError as e:
            if _is_slot_conflict(e):
                logger.info(f"Slot {when.isoformat()} claimed concurrently")
                raise SlotTakenError(scheduled_at=when.isoformat()) from e
            raise

        logger.info(
            f"Appointment {appointment.id} booked for user {user_id} at {when.isoformat()} "
            f"({service.value})"
        )
        return appointment

    # ------------------------------------------------------------------
    # Guarded changes
    # ------------------------------------------------------------------

    async def _ensure_may_act(self, session: AsyncSession, appointment: Appointment, acting_user_id: int) -> None:
        """Only the owner or staff may touch an appointment, guarded change or not."""
        actor = await self.users.get_user(acting_user_id, session=session)
        if not actor.is_privileged and actor.id != appointment.user_id:
            logger.warning(
                f"User {acting_user_id} tried to change appointment {appointment.id} "
                f"of user {appointment.user_id}"
            )
            raise PermissionDeniedError(appointment_id=appointment.id, user_id=acting_user_id)

    async def _guarded_change(
        self,
        appointment_id: int,
        acting_user_id: int,
        apply: Callable[[Appointment], None],
        operation: str,
        now: datetime,
    ) -> Appointment:
        async def _work(session: AsyncSession) -> Appointment:
            appointment = await session.get(Appointment, appointment_id, with_for_update=True)
            if appointment is None:
                raise AppointmentNotFoundError(appointment_id=appointment_id)

            await self._ensure_may_act(session, appointment, acting_user_id)
            before = appointment.snapshot()
            apply(appointment)

            with session.sync_session.no_autoflush:
                await self.guard.enforce(session, appointment, before, acting_user_id, now=now)

                moved = appointment.scheduled_at != before["scheduled_at"]
                if moved and appointment.is_active:
                    try:
                        await self.slots.claim(session, appointment.scheduled_at, exclude_id=appointment.id)
                    except SlotTakenError:
                        appointment.restore(before)
                        raise

            await session.flush()
            return appointment

        try:
            return await self.database.run_in_transaction(_work, operation_name=operation, serializable=True)
        except IntegrityError as e:
            if _is_slot_conflict(e):
                raise SlotTakenError() from e
            raise

    async def request_modification(
        self,
        appointment_id: int,
        changes: AppointmentChanges,
        acting_user_id: int,
        now: Optional[datetime] = None,
    ) -> Appointment:
        """Reschedule, change the service, or edit notes/vehicle."""
        now = now or self.clock()
        if changes.is_empty():
            raise ValidationError("Aucune modification demandée")

        service = parse_service_type(changes.service_type) if changes.service_type is not None else None
        if changes.scheduled_at is not None:
            self._validate_instant(changes.scheduled_at, now)

        def _apply(appointment: Appointment) -> None:
            moves_slot = changes.scheduled_at is not None and changes.scheduled_at != appointment.scheduled_at
            changes_service = service is not None and service != appointment.service_type
            if (moves_slot or changes_service) and appointment.status in TERMINAL_STATUSES:
                raise ValidationError("Ce rendez-vous n'est plus actif")

            if changes.scheduled_at is not None:
                appointment.scheduled_at = changes.scheduled_at
            if service is not None:
                appointment.service_type = service
            if changes.customer_notes is not None:
                appointment.customer_notes = changes.customer_notes
            if changes.vehicle is not None:
                appointment.vehicle_make = changes.vehicle.make
                appointment.vehicle_model = changes.vehicle.model
                appointment.vehicle_plate = changes.vehicle.plate

        appointment = await self._guarded_change(
            appointment_id, acting_user_id, _apply, "Modify appointment", now
        )
        logger.info(f"Appointment {appointment_id} modified by user {acting_user_id}")
        return appointment

    async def request_cancellation(
        self, appointment_id: int, acting_user_id: int, now: Optional[datetime] = None
    ) -> Appointment:
        """Cancel a confirmed appointment. Already completed/cancelled ones are returned unchanged."""
        now = now or self.clock()

        def _apply(appointment: Appointment) -> None:
            if appointment.status in TERMINAL_STATUSES:
                logger.info(
                    f"Appointment {appointment.id} already {appointment.status.value}, nothing to cancel"
                )
                return
            appointment.status = AppointmentStatus.CANCELLED
            appointment.cancelled_at = now

        appointment = await self._guarded_change(
            appointment_id, acting_user_id, _apply, "Cancel appointment", now
        )
        logger.info(f"Appointment {appointment_id} cancellation handled for user {acting_user_id}")
        return appointment

    async def delete(self, appointment_id: int, acting_user_id: int, now: Optional[datetime] = None) -> None:
        """Remove an appointment for good. Deleting an active one is guarded like a cancellation."""
        now = now or self.clock()

        async def _delete(session: AsyncSession) -> None:
            appointment = await session.get(Appointment, appointment_id, with_for_update=True)
            if appointment is None:
                raise AppointmentNotFoundError(appointment_id=appointment_id)

            await self._ensure_may_act(session, appointment, acting_user_id)
            before = appointment.snapshot()
            await self.guard.enforce(session, appointment, before, acting_user_id, deleted=True, now=now)
            await session.delete(appointment)

        await self.database.run_in_transaction(_delete, operation_name="Delete appointment")
        logger.info(f"Appointment {appointment_id} deleted by user {acting_user_id}")

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete(self, appointment_id: int, now: Optional[datetime] = None) -> CompletionResult:
        """Mark an appointment completed, then credit loyalty points.

        Completion is committed first. If the credit fails the error is logged
        and returned in the result; the appointment stays completed and a later
        call retries only the credit.
        """
        now = now or self.clock()

        async def _complete(session: AsyncSession) -> Appointment:
            appointment = await session.get(Appointment, appointment_id, with_for_update=True)
            if appointment is None:
                raise AppointmentNotFoundError(appointment_id=appointment_id)

            if appointment.status == AppointmentStatus.CANCELLED:
                raise ValidationError("Un rendez-vous annulé ne peut pas être terminé")

            if appointment.status != AppointmentStatus.COMPLETED:
                appointment.status = AppointmentStatus.COMPLETED
                appointment.completed_at = now
                await session.flush()
                logger.info(f"Appointment {appointment_id} marked as completed")
            return appointment

        appointment = await self.database.run_in_transaction(_complete, operation_name="Complete appointment")

        result = CompletionResult(appointment=appointment)
        try:
            result.loyalty_transaction = await self.loyalty.credit_for_completed_appointment(
                appointment.user_id, appointment.id
            )
        except Exception as e:
            logger.error(
                f"Loyalty credit failed for completed appointment {appointment_id}: {e}",
                exc_info=True,
            )
            result.loyalty_error = str(e)
        return result

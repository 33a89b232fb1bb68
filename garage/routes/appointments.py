"""Appointment endpoints."""

import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response, status

from garage.bootstrap import Services
from garage.models.user import User
from garage.routes.deps import (
    ensure_self_or_staff,
    get_acting_user,
    get_acting_user_id,
    get_services,
    require_staff,
)
from garage.schemas import (
    AppointmentResponse,
    AvailableSlotsResponse,
    BookAppointmentRequest,
    CanModifyResponse,
    CompletionResponse,
    ModifyAppointmentRequest,
)
from garage.services.appointment_service import AppointmentChanges, VehicleInfo

logger = logging.getLogger(__name__)

router = APIRouter()


async def _notify_staff(services: Services, appointment) -> None:
    """Runs after the response is sent; a failed alert never affects the booking."""
    try:
        await services.notifications.notify_staff_new_appointment(appointment)
    except Exception as e:
        logger.error(f"Error sending new appointment notification: {e}", exc_info=True)


@router.post("", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    body: BookAppointmentRequest,
    background_tasks: BackgroundTasks,
    actor: User = Depends(get_acting_user),
    services: Services = Depends(get_services),
):
    """Book a confirmed appointment. 409 when the slot is already taken."""
    ensure_self_or_staff(actor, body.user_id)
    appointment = await services.appointments.book(
        user_id=body.user_id or actor.id,
        customer_name=body.customer_name,
        service_type=body.service_type,
        when=body.scheduled_at,
        vehicle=VehicleInfo(make=body.vehicle.make, model=body.vehicle.model, plate=body.vehicle.plate),
        notes=body.notes,
    )
    background_tasks.add_task(_notify_staff, services, appointment)
    return appointment


@router.get("/slots", response_model=AvailableSlotsResponse)
async def list_available_slots(
    day: date = Query(..., alias="date", description="YYYY-MM-DD"),
    services: Services = Depends(get_services),
):
    slots = await services.slots.available_slots(day, now=services.appointments.clock())
    return AvailableSlotsResponse(date=day, timezone=services.settings.GARAGE_TIMEZONE, slots=slots)


@router.get("", response_model=List[AppointmentResponse])
async def list_appointments(
    user_id: Optional[int] = Query(None),
    actor: User = Depends(get_acting_user),
    services: Services = Depends(get_services),
):
    """A user's appointments, newest first. Staff omitting ``user_id`` get the whole agenda."""
    ensure_self_or_staff(actor, user_id)
    if user_id is None and actor.is_privileged:
        return await services.appointments.list_all()
    return await services.appointments.list_for_user(user_id or actor.id)


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: int,
    actor: User = Depends(get_acting_user),
    services: Services = Depends(get_services),
):
    appointment = await services.appointments.get(appointment_id)
    ensure_self_or_staff(actor, appointment.user_id)
    return appointment


@router.get("/{appointment_id}/can-modify", response_model=CanModifyResponse)
async def can_modify_appointment(
    appointment_id: int,
    acting_user_id: int = Depends(get_acting_user_id),
    services: Services = Depends(get_services),
):
    return await services.appointments.can_modify(appointment_id, acting_user_id)


@router.patch("/{appointment_id}", response_model=AppointmentResponse)
async def modify_appointment(
    appointment_id: int,
    body: ModifyAppointmentRequest,
    acting_user_id: int = Depends(get_acting_user_id),
    services: Services = Depends(get_services),
):
    """Reschedule or edit. 403 inside the 24-hour window unless staff."""
    vehicle = None
    if body.vehicle is not None:
        vehicle = VehicleInfo(make=body.vehicle.make, model=body.vehicle.model, plate=body.vehicle.plate)

    changes = AppointmentChanges(
        scheduled_at=body.scheduled_at,
        service_type=body.service_type,
        customer_notes=body.customer_notes,
        vehicle=vehicle,
    )
    return await services.appointments.request_modification(appointment_id, changes, acting_user_id)


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: int,
    acting_user_id: int = Depends(get_acting_user_id),
    services: Services = Depends(get_services),
):
    return await services.appointments.request_cancellation(appointment_id, acting_user_id)


@router.post("/{appointment_id}/complete", response_model=CompletionResponse)
async def complete_appointment(
    appointment_id: int,
    staff: User = Depends(require_staff),
    services: Services = Depends(get_services),
):
    """Mark the appointment done and credit loyalty points (staff only)."""
    result = await services.appointments.complete(appointment_id)
    return CompletionResponse(
        appointment=AppointmentResponse.model_validate(result.appointment),
        loyalty_credited=result.loyalty_credited,
        loyalty_points_awarded=result.loyalty_transaction.points if result.loyalty_transaction else 0,
        loyalty_error=result.loyalty_error,
    )


@router.delete("/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_appointment(
    appointment_id: int,
    acting_user_id: int = Depends(get_acting_user_id),
    services: Services = Depends(get_services),
):
    await services.appointments.delete(appointment_id, acting_user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
